"""Bench test sequencing: throttle primitives, sampling, modes and runs."""

from .cancellation import CancellationToken, RunCancelled
from .modes import (
    MODES,
    EnduranceParams,
    IrParams,
    KvParams,
    MappingParams,
    ModeContext,
    ModeParams,
    ModeSpec,
    SequencerError,
    StepParams,
    SweepParams,
    ThermalParams,
    VoltagePrompt,
    get_mode,
)
from .runner import ControlsState, SequencerPhase, TestSequencer
from .sampler import Sampler
from .throttle import ThrottleController

__all__ = [
    "MODES",
    "CancellationToken",
    "ControlsState",
    "EnduranceParams",
    "IrParams",
    "KvParams",
    "MappingParams",
    "ModeContext",
    "ModeParams",
    "ModeSpec",
    "RunCancelled",
    "Sampler",
    "SequencerError",
    "SequencerPhase",
    "StepParams",
    "SweepParams",
    "TestSequencer",
    "ThermalParams",
    "ThrottleController",
    "VoltagePrompt",
    "get_mode",
]
