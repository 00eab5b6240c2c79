class DeploymentError(Exception):
    """Base class for errors raised while preparing or executing a deployment plan."""


class ConfigurationError(DeploymentError, ValueError):
    """A required parameter is absent or malformed; raised before any transaction is sent."""


class ProviderError(DeploymentError):
    """The network provider could not be reached or rejected the request."""


class RevertError(DeploymentError):
    """The transaction was rejected by the contract."""


class TransactionTimeoutError(DeploymentError, TimeoutError):
    """The transaction was not confirmed within the allowed window."""


class VerificationError(DeploymentError):
    """Source verification failed for a step whose failure policy is fatal."""


class ManifestMismatchError(DeploymentError):
    """The local proxy manifest has no (or a stale) record for an on-chain proxy."""


class AbiNotFound(DeploymentError, LookupError):
    """No compiled contract type is known under the requested name."""


class ProxyError(DeploymentError):
    """The address does not behave like an EIP1967 proxy."""


class PlanAborted(DeploymentError):
    """A fatal error halted the plan; carries the failing step and the underlying cause."""

    def __init__(self, step_name: str, cause: Exception):
        self.step_name = step_name
        self.cause = cause
        super().__init__(f"Step '{step_name}' failed: {cause}")
