class DeploymentError(Exception):
    """Base class for every error raised by the deployment engine"""


class ConfigurationError(DeploymentError):
    """Invalid manifest or flag combination, detected before any provider call"""


class DeploymentTimeout(DeploymentError):
    def __init__(self, timeout_s, what="deployment"):
        super().__init__(f"timeout has been exceeded while waiting for {what}: {timeout_s / 60:.0f} minutes")
        self.timeout_s = timeout_s


class ProviderError(DeploymentError):
    """Failure reported by the cloud provider"""

    def __init__(self, message, code="", retryable=True):
        super().__init__(message)
        self.code = code
        self.retryable = retryable


class AlreadyExistsError(ProviderError):
    def __init__(self, message, code="Duplicate"):
        super().__init__(message, code=code, retryable=False)


class ResourceNotFoundError(ProviderError):
    def __init__(self, message, code="NotFound"):
        super().__init__(message, code=code, retryable=False)
