"""Custom exceptions for the sandbox orchestrator."""


class AgentboxError(Exception):
    """Base exception for all agentbox errors."""

    pass


class ConfigurationError(AgentboxError):
    """Configuration error."""

    pass


class ValidationError(AgentboxError):
    """A request or spec was rejected before any cluster action."""

    pass


class NotFoundError(AgentboxError):
    """Referenced environment, execution or session does not exist."""

    def __init__(self, kind: str, identifier: str):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} not found: {identifier}")


class PreconditionError(AgentboxError):
    """Operation is not allowed in the entity's current state."""

    pass


class CapacityError(AgentboxError):
    """A bounded resource (session ceiling, execution queue) is exhausted."""

    pass


class ClusterError(AgentboxError):
    """A cluster gateway call failed."""

    def __init__(
        self,
        operation: str,
        message: str,
        status: int | None = None,
        permanent: bool = False,
        cause: Exception | None = None,
    ):
        self.operation = operation
        self.status = status
        self.permanent = permanent
        self.cause = cause
        super().__init__(f"{operation} failed: {message}")


class ExecutionError(AgentboxError):
    """A command run could not be carried out."""

    def __init__(self, exec_id: str, message: str, cause: Exception | None = None):
        self.exec_id = exec_id
        self.cause = cause
        super().__init__(f"Execution '{exec_id}' failed: {message}")
