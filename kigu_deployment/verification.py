from enum import Enum
from typing import Any, NamedTuple, Optional, Sequence

from ape.api import ExplorerAPI
from eth_typing import ChecksumAddress

from kigu_deployment.constants import ALREADY_VERIFIED_MARKER, IMPLEMENTATION_NAME_SUFFIX
from kigu_deployment.exceptions import ProxyError


class VerificationStatus(Enum):
    VERIFIED = "verified"
    ALREADY_VERIFIED = "already verified"
    FAILED = "failed"
    SKIPPED = "skipped"


class VerificationResult(NamedTuple):
    name: str
    address: Optional[ChecksumAddress]
    status: VerificationStatus
    reason: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.status is VerificationStatus.FAILED

    @property
    def verified(self) -> bool:
        return self.status in (VerificationStatus.VERIFIED, VerificationStatus.ALREADY_VERIFIED)


def is_already_verified(message: Any) -> bool:
    """Explorers report re-submissions as errors; those are successes for us."""
    return ALREADY_VERIFIED_MARKER in str(message).lower()


class ApeExplorer:
    """Publishes contract sources through the connected network's ape explorer plugin."""

    def __init__(self, explorer: ExplorerAPI):
        self._explorer = explorer

    def publish(self, address: ChecksumAddress, constructor_args: Sequence[Any] = ()) -> None:
        """
        Submits the source of the contract deployed at the given address.

        ``constructor_args`` is not forwarded: ape-etherscan decodes the
        constructor arguments from the contract's creation transaction, so the
        explorer always receives exactly what was deployed. It is part of the
        signature so that explorers which need the arguments can be swapped in.
        """
        self._explorer.publish_contract(address)


class VerificationService:
    """
    Submits deployed contracts to a block explorer for source verification.

    Failures are reported, never raised: whether a failure is fatal is the
    caller's policy.
    """

    def __init__(self, explorer, proxies=None, enabled: bool = True):
        self._explorer = explorer
        self._proxies = proxies
        self.enabled = enabled

    def verify(
        self,
        name: str,
        address: ChecksumAddress,
        constructor_args: Sequence[Any] = (),
    ) -> VerificationResult:
        if not self.enabled:
            print(f"(i) Skipping verification of {name}.")
            return VerificationResult(name, address, VerificationStatus.SKIPPED)

        print(f"(i) Verifying {name} at {address}...")
        try:
            self._explorer.publish(address, list(constructor_args))
        except Exception as error:  # explorer plugins raise their own error types
            reason = str(error)
            if is_already_verified(reason):
                print(f"(i) {name} already verified.")
                return VerificationResult(name, address, VerificationStatus.ALREADY_VERIFIED)
            print(f"(!) Verification failed for {name}: {reason}")
            return VerificationResult(name, address, VerificationStatus.FAILED, reason)

        print(f"(i) Verified {name} at {address}")
        return VerificationResult(name, address, VerificationStatus.VERIFIED)

    def verify_proxy(self, name: str, proxy_address: ChecksumAddress) -> VerificationResult:
        """Verifies the implementation behind a proxy; explorers attribute the proxy to it."""
        implementation_name = f"{name}{IMPLEMENTATION_NAME_SUFFIX}"
        if not self.enabled:
            print(f"(i) Skipping verification of {implementation_name}.")
            return VerificationResult(implementation_name, None, VerificationStatus.SKIPPED)

        try:
            implementation = self._proxies.resolve_implementation_address(proxy_address)
        except ProxyError as error:
            print(f"(!) Proxy verification failed for {name}: {error}")
            return VerificationResult(
                implementation_name, None, VerificationStatus.FAILED, str(error)
            )

        print(f"(i) Implementation address for {name}: {implementation}")
        return self.verify(implementation_name, implementation)
