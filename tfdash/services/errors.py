class TfdashException(Exception):
    pass


class IntegrityException(TfdashException):
    pass


class NotFoundException(TfdashException):
    pass


class InvalidTransitionException(IntegrityException):
    """A status change that is not an edge of the deployment state machine."""

    def __init__(self, current: str, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Deployment cannot move from '{current}' to '{target}'")


class DeploymentInProgressException(TfdashException):
    pass


class PreconditionException(TfdashException):
    """Rejected before any workspace is written or any process is spawned."""


class WorkspaceException(TfdashException):
    pass
