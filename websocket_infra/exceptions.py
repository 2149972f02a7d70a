class InfraError(RuntimeError):
    """Base class for every error raised while composing the topology."""


class ConfigurationError(InfraError, ValueError):
    pass


class TopologyError(InfraError):
    """A composed topology or build plan breaks one of its invariants."""


class NetworkLookupError(InfraError):
    pass


class NoHealthyTargetsError(InfraError):
    pass


class MissingOutputError(InfraError):
    def __init__(self, stack_name: str, missing):
        self.stack_name = stack_name
        self.missing = sorted(missing)
        super().__init__(
            f"Stack {stack_name} is missing outputs: {', '.join(self.missing)}"
        )
