from typing import Optional


class ControllerError(Exception):
    """Base class for every error the controller surfaces to callers."""

    kind = "controller_error"

    def to_dict(self) -> dict:
        return {"error": self.kind, "detail": str(self)}


class ConfigError(ControllerError):
    kind = "config_error"


class TransportError(ControllerError):
    """
    The daemon could not be reached or did not answer in time.

    `ambiguous` is set when the request may have reached the daemon before the
    failure (read timeout, connection dropped mid-response).
    """

    kind = "transport_error"

    def __init__(self, message: str, *, ambiguous: bool = False):
        super().__init__(message)
        self.ambiguous = bool(ambiguous)


class DaemonWarmingUp(TransportError):
    """RPC error -28: the daemon is up but still loading."""

    kind = "daemon_warming_up"


class DaemonRejected(ControllerError):
    """The daemon understood the request and refused it."""

    kind = "daemon_rejected"

    def __init__(self, message: str, *, code: Optional[int] = None, method: Optional[str] = None):
        super().__init__(message)
        self.code = code
        self.method = method

    def to_dict(self) -> dict:
        out = super().to_dict()
        out["code"] = self.code
        return out


class NotReady(ControllerError):
    kind = "not_ready"

    def __init__(self, state):
        self.state = state
        super().__init__(f"daemon is not ready (state={getattr(state, 'value', state)})")

    def to_dict(self) -> dict:
        out = super().to_dict()
        out["readiness"] = getattr(self.state, "value", str(self.state))
        return out


class QueueRejected(ControllerError):
    kind = "queue_rejected"

    def __init__(self, depth: int):
        self.depth = int(depth)
        super().__init__(f"production queue is full (depth={self.depth}); retry later")


class ExecutionFailed(ControllerError):
    """
    A production request failed.

    classification is one of:
      - rejected: the daemon refused the call, no blocks were made
      - transport: the call never reached the daemon
      - ambiguous: the outcome is unknown, re-query the height
    """

    kind = "execution_failed"

    REJECTED = "rejected"
    TRANSPORT = "transport"
    AMBIGUOUS = "ambiguous"

    def __init__(self, message: str, *, classification: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.classification = classification
        self.cause = cause

    def to_dict(self) -> dict:
        out = super().to_dict()
        out["classification"] = self.classification
        if isinstance(self.cause, DaemonRejected):
            out["code"] = self.cause.code
        return out

    @classmethod
    def from_error(cls, exc: BaseException) -> "ExecutionFailed":
        if isinstance(exc, DaemonRejected):
            return cls(str(exc), classification=cls.REJECTED, cause=exc)
        if isinstance(exc, TransportError) and exc.ambiguous:
            return cls(
                f"{exc}; blocks may or may not have been created, re-query height",
                classification=cls.AMBIGUOUS,
                cause=exc,
            )
        return cls(str(exc), classification=cls.TRANSPORT, cause=exc)
