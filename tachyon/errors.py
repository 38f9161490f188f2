class ConfigurationError(RuntimeError):
    """Raised when the environment describes an unusable server configuration."""


class UpstreamError(RuntimeError):
    """Raised when the identity provider cannot complete a login exchange."""
