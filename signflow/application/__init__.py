"""Application services."""

from .signing import (
    SetupErrorKind,
    SigningService,
    SigningSetupError,
    configure_signing_service,
    get_deferred_queue,
    get_signing_service,
    reset_signing_state,
)
from .state_machine import SigningStateMachine, effective_status

__all__ = [
    "SetupErrorKind",
    "SigningService",
    "SigningSetupError",
    "SigningStateMachine",
    "configure_signing_service",
    "effective_status",
    "get_deferred_queue",
    "get_signing_service",
    "reset_signing_state",
]
