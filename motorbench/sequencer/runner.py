"""Run lifecycle: start, stop, finalize."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Dict, Mapping, Optional

from ..channel import CommandChannelError
from ..config import SequencerConfig
from ..core.listeners import ListenerSet
from ..core.models import RunOutcome, TelemetrySample, TestRun
from ..core.protocols import SleepFunc
from ..core.status import DeviceStatus
from .cancellation import CancellationToken, RunCancelled
from .modes import ModeContext, SequencerError, VoltagePrompt, get_mode
from .sampler import Sampler
from .throttle import CommandSender, ThrottleController

if TYPE_CHECKING:
    from ..history import HistoryStore
    from ..profiles import ProfileCatalog

LOGGER = logging.getLogger(__name__)


class SequencerPhase(str, Enum):
    """Exactly one phase holds at a time; IDLE is the only resting phase."""

    IDLE = "idle"
    RUNNING = "running"
    STOPPING = "stopping"


@dataclass(frozen=True, slots=True)
class ControlsState:
    """What an operator surface may offer right now."""

    connected: bool
    armed: bool
    phase: SequencerPhase
    can_modify: bool
    can_stop: bool


ProgressListener = Callable[[float, str], Any]
StatusMessageListener = Callable[[str, str], Any]
PhaseListener = Callable[[SequencerPhase], Any]
ControlsListener = Callable[[ControlsState], Any]
FinishedListener = Callable[[TestRun], Any]
Analyzer = Callable[[TestRun], Any]


class TestSequencer:
    """Runs one test mode at a time against the bench.

    Whatever way a run ends, the sampler is stopped, collected samples are
    analyzed and appended to history, and the phase returns to IDLE. A
    failing run is ramped down to the arm floor before it is finalized;
    ``stop()`` always performs the same ramp.
    """

    __test__ = False  # keep pytest from collecting this class

    def __init__(
        self,
        *,
        channel: CommandSender,
        telemetry: Callable[[], Optional[TelemetrySample]],
        status: Optional[Callable[[], Optional[DeviceStatus]]] = None,
        is_connected: Optional[Callable[[], bool]] = None,
        profiles: Optional["ProfileCatalog"] = None,
        history: Optional["HistoryStore"] = None,
        analyzer: Optional[Analyzer] = None,
        voltage_prompt: Optional[VoltagePrompt] = None,
        config: Optional[SequencerConfig] = None,
        sleep: Optional[SleepFunc] = None,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self._channel = channel
        self._telemetry = telemetry
        self._status = status or (lambda: None)
        self._is_connected = is_connected or (lambda: True)
        self._profiles = profiles
        self._history = history
        self._analyzer = analyzer
        self._voltage_prompt = voltage_prompt
        self._config = config or SequencerConfig()
        self._sleep = sleep or asyncio.sleep
        self._clock = clock or time.monotonic

        self._phase = SequencerPhase.IDLE
        self._task: Optional[asyncio.Task[TestRun]] = None
        self._token: Optional[CancellationToken] = None
        self._throttle: Optional[ThrottleController] = None
        self._current_run: Optional[TestRun] = None
        self._last_run: Optional[TestRun] = None
        self._last_error: Optional[str] = None

        self._progress_listeners: ListenerSet[ProgressListener] = ListenerSet("progress")
        self._status_listeners: ListenerSet[StatusMessageListener] = ListenerSet("status message")
        self._phase_listeners: ListenerSet[PhaseListener] = ListenerSet("phase")
        self._controls_listeners: ListenerSet[ControlsListener] = ListenerSet("controls")
        self._finished_listeners: ListenerSet[FinishedListener] = ListenerSet("run finished")

    @property
    def phase(self) -> SequencerPhase:
        return self._phase

    @property
    def running(self) -> bool:
        return self._phase is SequencerPhase.RUNNING

    @property
    def stopping(self) -> bool:
        return self._phase is SequencerPhase.STOPPING

    @property
    def current_run(self) -> Optional[TestRun]:
        return self._current_run

    @property
    def last_run(self) -> Optional[TestRun]:
        return self._last_run

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error

    @property
    def current_throttle(self) -> float:
        return self._throttle.current_percent if self._throttle else 0.0

    def add_progress_listener(self, listener: ProgressListener) -> Callable[[], None]:
        return self._progress_listeners.add(listener)

    def add_status_listener(self, listener: StatusMessageListener) -> Callable[[], None]:
        return self._status_listeners.add(listener)

    def add_phase_listener(self, listener: PhaseListener) -> Callable[[], None]:
        return self._phase_listeners.add(listener)

    def add_controls_listener(self, listener: ControlsListener) -> Callable[[], None]:
        return self._controls_listeners.add(listener)

    def add_finished_listener(self, listener: FinishedListener) -> Callable[[], None]:
        return self._finished_listeners.add(listener)

    def controls_state(self) -> ControlsState:
        connected = bool(self._is_connected())
        status = self._status()
        armed = bool(status and status.armed)
        return ControlsState(
            connected=connected,
            armed=armed,
            phase=self._phase,
            can_modify=connected and armed and self._phase is SequencerPhase.IDLE,
            can_stop=self._phase is SequencerPhase.RUNNING,
        )

    def refresh_controls(self) -> None:
        """Re-emit the controls state, e.g. after a connection or arm change."""
        self._controls_listeners.emit(self.controls_state())

    def start(self, mode: str, params: Optional[Mapping[str, Any]] = None) -> asyncio.Task[TestRun]:
        """Validate and launch a run; returns the task that yields the sealed run.

        Raises:
            SequencerError: If a run is active, the mode is unknown or the
                parameters are invalid. Nothing is sent in that case.
        """

        if self._phase is not SequencerPhase.IDLE:
            raise SequencerError(f"Cannot start '{mode}' while {self._phase.value}")

        spec = get_mode(mode)
        parsed = spec.parse(params)
        profile = self._profiles.active if self._profiles else None
        run = TestRun(mode=mode, params=parsed.as_dict(), profile=profile)

        token = CancellationToken()
        sampler = Sampler(
            telemetry=self._telemetry,
            throttle=lambda: self.current_throttle,
            interval=self._config.sample_interval_ms / 1000.0,
            sleep=self._sleep,
            clock=self._clock,
        )
        throttle = ThrottleController(
            self._channel,
            floor_percent=self._floor_percent,
            sleep=self._sleep,
            on_first_send=sampler.start,
        )
        context = ModeContext(
            throttle=throttle,
            token=token,
            run=run,
            progress=self._emit_progress,
            status=self._emit_status,
            telemetry=self._telemetry,
            sleep=self._sleep,
            voltage_prompt=self._voltage_prompt,
            kv_sample_interval=self._config.kv_sample_interval_ms / 1000.0,
        )

        self._token = token
        self._throttle = throttle
        self._current_run = run
        self._last_error = None
        self._set_phase(SequencerPhase.RUNNING)

        LOGGER.info("Analyze start: %s %s", mode, run.params)
        self._emit_status(f"{mode} analyze is running", "info")
        self._emit_progress(0.0, "")

        self._task = asyncio.create_task(self._execute(spec.runner, parsed, context, sampler))
        return self._task

    async def run(self, mode: str, params: Optional[Mapping[str, Any]] = None) -> TestRun:
        return await self.start(mode, params)

    async def stop(self) -> None:
        """Cancel the active run, ramping down to the arm floor first."""

        if self._phase is not SequencerPhase.RUNNING:
            return

        run = self._current_run
        mode = run.mode if run else "unknown"
        self._set_phase(SequencerPhase.STOPPING)
        LOGGER.info("Analyze stop requested: %s", mode)
        self._emit_status("Stopping analyze...", "warn")

        if self._token is not None:
            self._token.cancel("stopped by operator")
        await self._safety_ramp()

        task = self._task
        if task is not None and not task.done():
            await asyncio.wait({task})

        self._set_phase(SequencerPhase.IDLE)
        self._emit_status(f"{mode} analyze stopped", "info")

    async def aclose(self) -> None:
        if self._phase is SequencerPhase.RUNNING:
            await self.stop()
        task = self._task
        if task is not None and not task.done():
            task.cancel()
            await asyncio.wait({task})

    def _floor_percent(self) -> float:
        if self._profiles is None:
            return 0.0
        return self._profiles.arm_floor_percent()

    async def _safety_ramp(self) -> None:
        throttle = self._throttle
        if throttle is None:
            return
        try:
            await throttle.ramp_to_floor(self._config.stop_ramp_ms)
        except CommandChannelError as exc:
            LOGGER.error("Safety ramp-down failed: %s", exc)

    async def _execute(
        self,
        runner: Callable[[ModeContext, Any], Any],
        params: Any,
        context: ModeContext,
        sampler: Sampler,
    ) -> TestRun:
        run = context.run
        outcome = RunOutcome.COMPLETED
        error: Optional[str] = None
        try:
            await runner(context, params)
        except RunCancelled:
            outcome = RunOutcome.CANCELLED
        except asyncio.CancelledError:
            outcome = RunOutcome.CANCELLED
            raise
        except Exception as exc:
            outcome = RunOutcome.FAILED
            error = str(exc) or exc.__class__.__name__
            self._last_error = error
            LOGGER.error("Analyze error: %s", error)
            self._emit_status(f"Error: {error}", "error")
            if self._phase is SequencerPhase.RUNNING:
                await self._safety_ramp()
        else:
            self._emit_status(f"{run.mode} analyze completed", "info")
        finally:
            run.samples = list(await sampler.stop())
            run.seal(outcome, error=error)
            self._finalize(run)
        return run

    def _finalize(self, run: TestRun) -> None:
        if run.samples:
            if self._analyzer is not None:
                try:
                    result = self._analyzer(run)
                    run.analysis = result.as_dict() if hasattr(result, "as_dict") else result
                except Exception:
                    LOGGER.exception("Analysis of %s run failed", run.mode)
            if self._history is not None:
                self._history.append(run)
        else:
            LOGGER.info("No samples collected for %s run; not saved", run.mode)

        LOGGER.info(
            "Analyze %s: %s (%d samples)", run.outcome.value if run.outcome else "?", run.mode, len(run.samples)
        )
        self._last_run = run
        self._current_run = None
        if self._phase is SequencerPhase.RUNNING:
            self._set_phase(SequencerPhase.IDLE)
        else:
            self.refresh_controls()
        self._finished_listeners.emit(run)

    def _set_phase(self, phase: SequencerPhase) -> None:
        if phase is self._phase:
            return
        self._phase = phase
        self._phase_listeners.emit(phase)
        self.refresh_controls()

    def _emit_progress(self, percent: float, text: str) -> None:
        self._progress_listeners.emit(max(0.0, min(100.0, percent)), text)

    def _emit_status(self, text: str, kind: str = "info") -> None:
        self._status_listeners.emit(text, kind)

    def describe(self) -> Dict[str, Any]:
        """Snapshot for health reporting."""

        run = self._current_run
        return {
            "phase": self._phase.value,
            "mode": run.mode if run else None,
            "throttle": round(self.current_throttle, 2),
            "lastError": self._last_error,
        }
