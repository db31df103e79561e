"""
Scenario executors: run one workload under a concurrency discipline.

Closed-loop (ramping workers):
    N worker threads each loop iteration -> think-time -> iteration.
    N follows the scenario's stage timeline, re-evaluated every tick.
    Workers removed by a ramp-down finish their in-flight iteration; the
    executor waits ``graceful_ramp_down`` for them before counting them as
    interrupted.

Open-loop (ramping arrival rate):
    A dispatcher starts the n-th invocation when the integral of the rate
    timeline reaches n, regardless of how long earlier invocations take.
    Invocations run on a pool of pre-allocated workers that may grow to
    ``max_vus``. When every worker is busy the invocation is dropped and
    counted in ``dropped_iterations``; nothing queues.

Both executors stay alive until their timeline ends (even at a target of
zero), stop starting iterations as soon as the shared cancel event is set,
and drain in-flight iterations for up to ``graceful_stop`` seconds.
"""

from __future__ import annotations

import logging
import queue
import random
import threading
import time
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, List, Optional

from loadharness.durations import format_duration
from loadharness.metrics.point import MetricKind
from loadharness.metrics.registry import (
    DROPPED_ITERATIONS,
    ITERATION_DURATION,
    ITERATIONS,
    ITERATIONS_INTERRUPTED,
    WORKLOAD_ERRORS,
    MetricsRegistry,
)
from loadharness.probe import HttpProbe
from loadharness.scenario import ExecutorKind, Scenario
from loadharness.stages import StageTimeline
from loadharness.workload import Workload, WorkloadContext

logger = logging.getLogger(__name__)

DEFAULT_TICK_SECONDS = 0.05

Clock = Callable[[], float]


@dataclass
class ScenarioRun:
    """
    Runtime state of one executing scenario.

    Owned by its executor; readers get copies through ``executor.state``.
    ``tags`` are the scenario's metric tags. ``level`` is the current worker
    target (closed-loop) or arrival rate per second (open-loop).
    """

    scenario: str
    executor: ExecutorKind
    tags: Dict[str, str] = field(default_factory=dict)
    stage_index: int = 0
    level: float = 0.0
    elapsed: float = 0.0
    active_workers: int = 0
    iterations_started: int = 0
    iterations_completed: int = 0
    dropped_iterations: int = 0
    interrupted_iterations: int = 0
    workload_errors: int = 0
    started: bool = False
    finished: bool = False
    cancelled: bool = False


class ScenarioExecutor:
    """Shared timing, iteration and bookkeeping for both executor kinds."""

    def __init__(
        self,
        scenario: Scenario,
        workload: Workload,
        *,
        registry: MetricsRegistry,
        probe: HttpProbe,
        cancel_event: Optional[threading.Event] = None,
        start_at: Optional[float] = None,
        seed: Optional[int] = None,
        tick_seconds: float = DEFAULT_TICK_SECONDS,
        clock: Clock = time.monotonic,
    ) -> None:
        self.scenario = scenario
        self.workload = workload
        self._registry = registry
        self._tags = scenario.metric_tags()
        self._probe = probe.with_tags(self._tags, registry=registry)
        self._cancel = cancel_event or threading.Event()
        self._start_at = start_at
        self._seed = scenario.seed if scenario.seed is not None else seed
        self._tick = tick_seconds
        self._clock = clock
        self._timeline: StageTimeline = scenario.timeline()
        self._run = ScenarioRun(
            scenario=scenario.name, executor=scenario.executor, tags=dict(self._tags)
        )
        self._lock = threading.Lock()
        self._t0: Optional[float] = None

    @property
    def state(self) -> ScenarioRun:
        with self._lock:
            return replace(self._run)

    @property
    def timeline(self) -> StageTimeline:
        return self._timeline

    def cancel(self) -> None:
        self._cancel.set()

    def run(self) -> ScenarioRun:
        """Run the scenario to completion (blocking) and return its final state."""
        if self._start_at is not None and not self._sleep_until(self._start_at, track=False):
            return self._finish(cancelled=True)
        self._t0 = self._clock()
        with self._lock:
            self._run.started = True
        logger.info(
            "scenario %s started: executor=%s duration=%s",
            self.scenario.name,
            self.scenario.executor.value,
            format_duration(self._timeline.duration),
        )
        self._execute()
        return self._finish(cancelled=self._cancel.is_set())

    def _execute(self) -> None:
        raise NotImplementedError

    def _finish(self, *, cancelled: bool) -> ScenarioRun:
        with self._lock:
            self._run.finished = True
            self._run.cancelled = cancelled
            self._run.active_workers = 0
            final = replace(self._run)
        logger.info(
            "scenario %s finished: iterations=%d dropped=%d interrupted=%d errors=%d%s",
            final.scenario,
            final.iterations_completed,
            final.dropped_iterations,
            final.interrupted_iterations,
            final.workload_errors,
            " (cancelled)" if cancelled else "",
        )
        return final

    # -- timing -----------------------------------------------------------

    def _elapsed(self) -> float:
        if self._t0 is None:
            return 0.0
        return self._clock() - self._t0

    def _update_level(self) -> float:
        elapsed = self._elapsed()
        level = self._timeline.value_at(elapsed)
        with self._lock:
            self._run.elapsed = elapsed
            self._run.level = level
            self._run.stage_index = self._timeline.stage_index_at(elapsed)
        return level

    def _sleep_until(self, deadline: float, *, track: bool = True) -> bool:
        """
        Wait until ``deadline`` on the executor clock.

        Returns False if cancelled first.
        """
        while True:
            if self._cancel.is_set():
                return False
            remaining = deadline - self._clock()
            if remaining <= 0:
                return True
            self._cancel.wait(min(remaining, self._tick))
            if track:
                self._update_level()

    # -- iterations -------------------------------------------------------

    def _new_context(self, worker_id: int, stop_event: threading.Event) -> WorkloadContext:
        if self._seed is None:
            rng = random.Random()
        else:
            rng = random.Random(self._seed + worker_id)
        return WorkloadContext(
            scenario=self.scenario.name,
            worker_id=worker_id,
            probe=self._probe,
            metrics=self._registry,
            rng=rng,
            tags=self._tags,
            stop_event=stop_event,
        )

    def _run_iteration(self, ctx: WorkloadContext) -> None:
        with self._lock:
            self._run.iterations_started += 1
        started = time.perf_counter()
        try:
            self.workload.fn(ctx)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "scenario %s worker %d iteration %d raised %r",
                ctx.scenario,
                ctx.worker_id,
                ctx.iteration,
                exc,
            )
            self._registry.record(
                WORKLOAD_ERRORS,
                MetricKind.COUNTER,
                1,
                {**self._tags, "error": type(exc).__name__},
            )
            with self._lock:
                self._run.workload_errors += 1
        finally:
            duration_ms = (time.perf_counter() - started) * 1000.0
            self._registry.record(ITERATIONS, MetricKind.COUNTER, 1, self._tags)
            self._registry.record(ITERATION_DURATION, MetricKind.TREND, duration_ms, self._tags)
            ctx.iteration += 1
            with self._lock:
                self._run.iterations_completed += 1

    def _think(self, ctx: WorkloadContext, stop_event: threading.Event) -> bool:
        """Pause for the workload's think-time; False if stopped meanwhile."""
        pause = self.workload.think_time.resolve(ctx.rng)
        if pause <= 0:
            return not stop_event.is_set()
        return not stop_event.wait(pause)

    def _record_interrupted(self, count: int) -> None:
        if count <= 0:
            return
        self._registry.record(ITERATIONS_INTERRUPTED, MetricKind.COUNTER, count, self._tags)
        with self._lock:
            self._run.interrupted_iterations += count


class _VirtualUser:
    """One closed-loop worker thread."""

    def __init__(self, worker_id: int) -> None:
        self.worker_id = worker_id
        self.stop_event = threading.Event()
        self.thread: Optional[threading.Thread] = None
        self.stop_deadline: Optional[float] = None

    def alive(self) -> bool:
        return self.thread is not None and self.thread.is_alive()


class ClosedLoopExecutor(ScenarioExecutor):
    """
    Ramping virtual users.

    The worker count is ``round(timeline.value_at(t))`` re-evaluated every
    tick, so ramps are continuous rather than stepwise.
    """

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._active: Dict[int, _VirtualUser] = {}
        self._retiring: List[_VirtualUser] = []

    def _execute(self) -> None:
        duration = self._timeline.duration
        while not self._cancel.is_set():
            elapsed = self._elapsed()
            if elapsed >= duration:
                break
            level = self._update_level()
            self._scale_to(int(level + 0.5))
            self._reap_retiring()
            self._cancel.wait(min(self._tick, max(0.0, duration - elapsed)))
        self._drain()

    def _scale_to(self, target: int) -> None:
        current = len(self._active)
        if target > current:
            taken = set(self._active) | {vu.worker_id for vu in self._retiring}
            free_ids = (i for i in range(target + len(taken)) if i not in taken)
            for _ in range(target - current):
                self._start_worker(next(free_ids))
        elif target < current:
            now = self._clock()
            for worker_id in sorted(self._active, reverse=True)[: current - target]:
                vu = self._active.pop(worker_id)
                vu.stop_event.set()
                vu.stop_deadline = now + self.scenario.graceful_ramp_down
                self._retiring.append(vu)
        with self._lock:
            self._run.active_workers = len(self._active)

    def _start_worker(self, worker_id: int) -> None:
        vu = _VirtualUser(worker_id)
        ctx = self._new_context(worker_id, vu.stop_event)
        vu.thread = threading.Thread(
            target=self._worker_loop,
            args=(vu, ctx),
            name=f"{self.scenario.name}-vu-{worker_id}",
            daemon=True,
        )
        self._active[worker_id] = vu
        vu.thread.start()

    def _worker_loop(self, vu: _VirtualUser, ctx: WorkloadContext) -> None:
        while not vu.stop_event.is_set() and not self._cancel.is_set():
            self._run_iteration(ctx)
            if self._cancel.is_set() or not self._think(ctx, vu.stop_event):
                break

    def _reap_retiring(self) -> None:
        now = self._clock()
        still: List[_VirtualUser] = []
        for vu in self._retiring:
            if not vu.alive():
                continue
            if vu.stop_deadline is not None and now >= vu.stop_deadline:
                logger.warning(
                    "scenario %s worker %d exceeded graceful ramp-down",
                    self.scenario.name,
                    vu.worker_id,
                )
                self._record_interrupted(1)
                continue
            still.append(vu)
        self._retiring = still

    def _drain(self) -> None:
        workers = list(self._active.values()) + self._retiring
        self._active.clear()
        self._retiring = []
        for vu in workers:
            vu.stop_event.set()
        deadline = self._clock() + self.scenario.graceful_stop
        interrupted = 0
        for vu in workers:
            if vu.thread is None:
                continue
            vu.thread.join(max(0.0, deadline - self._clock()))
            if vu.thread.is_alive():
                interrupted += 1
        if interrupted:
            logger.warning(
                "scenario %s: %d workers still in flight after graceful stop",
                self.scenario.name,
                interrupted,
            )
        self._record_interrupted(interrupted)
        with self._lock:
            self._run.active_workers = 0


_STOP = object()
_JOB = object()


class _WorkerPool:
    """
    Bounded pool of open-loop workers.

    ``idle`` counts workers blocked on the job queue with no job reserved
    for them; a job is only enqueued after reserving a worker, so the queue
    never holds more jobs than there are workers to take them.
    """

    def __init__(self, executor: "OpenLoopExecutor", initial: int, maximum: int) -> None:
        self._executor = executor
        self._max = maximum
        self._jobs: "queue.SimpleQueue[object]" = queue.SimpleQueue()
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._threads: List[threading.Thread] = []
        self._idle = 0
        for _ in range(initial):
            self._spawn(idle=True)

    @property
    def size(self) -> int:
        return len(self._threads)

    @property
    def busy(self) -> int:
        with self._lock:
            return len(self._threads) - self._idle

    def _spawn(self, *, idle: bool) -> None:
        worker_id = len(self._threads)
        ctx = self._executor._new_context(worker_id, self._stop_event)
        thread = threading.Thread(
            target=self._loop,
            args=(ctx,),
            name=f"{self._executor.scenario.name}-pool-{worker_id}",
            daemon=True,
        )
        self._threads.append(thread)
        if idle:
            self._idle += 1
        thread.start()

    def try_dispatch(self) -> bool:
        """Hand one invocation to a free worker; False when the pool is exhausted."""
        with self._lock:
            if self._idle > 0:
                self._idle -= 1
            elif len(self._threads) < self._max:
                self._spawn(idle=False)
            else:
                return False
            self._jobs.put(_JOB)
            return True

    def _loop(self, ctx: WorkloadContext) -> None:
        while True:
            job = self._jobs.get()
            if job is _STOP:
                return
            self._executor._run_iteration(ctx)
            self._executor._think(ctx, self._stop_event)
            with self._lock:
                self._idle += 1

    def shutdown(self, grace_seconds: float, clock: Clock) -> int:
        """Stop all workers after their in-flight job; returns how many overran ``grace_seconds``."""
        self._stop_event.set()
        with self._lock:
            threads = list(self._threads)
            for _ in threads:
                self._jobs.put(_STOP)
        deadline = clock() + grace_seconds
        overran = 0
        for thread in threads:
            thread.join(max(0.0, deadline - clock()))
            if thread.is_alive():
                overran += 1
        return overran


class OpenLoopExecutor(ScenarioExecutor):
    """
    Ramping arrival rate with a bounded worker pool.

    Invocation n (1-based) is due at the earliest t with
    ``timeline.integral(t) >= n``.
    """

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._pool: Optional[_WorkerPool] = None

    def _execute(self) -> None:
        assert self._t0 is not None
        t0 = self._t0
        duration = self._timeline.duration
        pool = _WorkerPool(
            self,
            initial=self.scenario.pre_allocated_vus,
            maximum=self.scenario.pool_size,
        )
        self._pool = pool
        dispatched = 0
        try:
            while not self._cancel.is_set():
                due = self._timeline.time_for_integral(dispatched + 1)
                if due is None or due > duration:
                    break
                if not self._sleep_until(t0 + due):
                    break
                if not pool.try_dispatch():
                    self._registry.record(DROPPED_ITERATIONS, MetricKind.COUNTER, 1, self._tags)
                    with self._lock:
                        self._run.dropped_iterations += 1
                dispatched += 1
                with self._lock:
                    self._run.active_workers = pool.busy
            # Stay alive until the timeline ends, even when no more starts are due.
            self._sleep_until(t0 + duration)
        finally:
            overran = pool.shutdown(self.scenario.graceful_stop, self._clock)
            if overran:
                logger.warning(
                    "scenario %s: %d pool workers still in flight after graceful stop",
                    self.scenario.name,
                    overran,
                )
            self._record_interrupted(overran)

    def _update_level(self) -> float:
        level = super()._update_level()
        if self._pool is not None:
            with self._lock:
                self._run.active_workers = self._pool.busy
        return level


def build_executor(
    scenario: Scenario,
    workload: Workload,
    **kwargs,
) -> ScenarioExecutor:
    """Executor matching ``scenario.executor``."""
    if scenario.executor is ExecutorKind.OPEN_LOOP:
        return OpenLoopExecutor(scenario, workload, **kwargs)
    return ClosedLoopExecutor(scenario, workload, **kwargs)
