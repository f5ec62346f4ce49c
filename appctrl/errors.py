"""Error types raised by the controller."""


class AppCtrlError(Exception):
    pass


class FlagNotAllowedError(AppCtrlError, ValueError):
    """A raw option is not in the allow-list of the requested kapp operation."""

    def __init__(self, flag: str, operation: str, reason: str = "is not allowed"):
        self.flag = flag
        self.operation = operation
        super().__init__(f"Expected kapp {operation} option '{flag}' to be allowed: option {reason}")


class StatusUpdateError(AppCtrlError):
    pass


class FinalizerUpdateError(AppCtrlError):
    pass
