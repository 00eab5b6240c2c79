import json
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, NamedTuple, Optional, Sequence

from ape.api import ProviderAPI
from ape.contracts.base import ContractContainer, ContractInstance
from ape.exceptions import ProviderError as ApeProviderError
from eth_typing import ChecksumAddress
from eth_utils import to_checksum_address
from hexbytes import HexBytes

from kigu_deployment.constants import (
    DEFAULT_INITIALIZER,
    EIP1967_ADMIN_SLOT,
    EIP1967_IMPLEMENTATION_SLOT,
    MANIFEST_DIR,
)
from kigu_deployment.exceptions import (
    ConfigurationError,
    ManifestMismatchError,
    ProviderError,
    ProxyError,
)
from kigu_deployment.transactions import ConfirmationWindow, TransactionSubmitter
from kigu_deployment.utils import _load_json

STANDARD_MANIFEST_JSON_FORMAT = {"indent": 4, "separators": (",", ": ")}


class ProxyState(Enum):
    UNREGISTERED = "unregistered"
    PROXY_DEPLOYED = "proxy_deployed"
    IMPLEMENTATION_VERIFIED = "implementation_verified"
    UPGRADED = "upgraded"


# one-directional; force-import re-enters PROXY_DEPLOYED only from UNREGISTERED
PROXY_STATE_TRANSITIONS = {
    ProxyState.UNREGISTERED: {ProxyState.PROXY_DEPLOYED},
    ProxyState.PROXY_DEPLOYED: {ProxyState.IMPLEMENTATION_VERIFIED, ProxyState.UPGRADED},
    ProxyState.IMPLEMENTATION_VERIFIED: {ProxyState.UPGRADED},
    ProxyState.UPGRADED: {ProxyState.UPGRADED},
}


class RedeployPolicy(Enum):
    ALWAYS = "always"
    ON_CHANGE = "on-change"


class ProxyEntry(NamedTuple):
    """A proxy as recorded in the local upgrade manifest."""

    address: ChecksumAddress
    contract: str
    admin: ChecksumAddress
    implementation: ChecksumAddress
    state: ProxyState
    implementations: List[ChecksumAddress]
    verified_implementation: Optional[ChecksumAddress] = None

    def to_json(self) -> Dict[str, Any]:
        return {
            "contract": self.contract,
            "admin": self.admin,
            "implementation": self.implementation,
            "state": self.state.value,
            "implementations": list(self.implementations),
            "verified_implementation": self.verified_implementation,
        }

    @classmethod
    def from_json(cls, address: str, data: Dict[str, Any]) -> "ProxyEntry":
        return cls(
            address=to_checksum_address(address),
            contract=data["contract"],
            admin=data["admin"],
            implementation=data["implementation"],
            state=ProxyState(data["state"]),
            implementations=list(data.get("implementations", [])),
            verified_implementation=data.get("verified_implementation"),
        )


class ProxyManifest:
    """Local upgrade-tracking manifest; one JSON file per chain."""

    def __init__(self, filepath: Path):
        self.filepath = Path(filepath)

    @classmethod
    def for_chain(cls, chain_id: int, directory: Path = MANIFEST_DIR) -> "ProxyManifest":
        return cls(Path(directory) / f"{chain_id}.json")

    def _read(self) -> Dict[str, Dict[str, Any]]:
        if not self.filepath.exists():
            return dict()
        return _load_json(self.filepath).get("proxies", dict())

    def get(self, proxy_address: str) -> Optional[ProxyEntry]:
        data = self._read().get(to_checksum_address(proxy_address))
        if data is None:
            return None
        return ProxyEntry.from_json(proxy_address, data)

    def state(self, proxy_address: str) -> ProxyState:
        entry = self.get(proxy_address)
        return entry.state if entry else ProxyState.UNREGISTERED

    def save(self, entry: ProxyEntry) -> None:
        proxies = self._read()
        proxies[entry.address] = entry.to_json()
        self.filepath.parent.mkdir(parents=True, exist_ok=True)
        temp_filepath = self.filepath.with_suffix(".tmp")
        with open(temp_filepath, "w") as file:
            json.dump({"proxies": proxies}, file, **STANDARD_MANIFEST_JSON_FORMAT)
        temp_filepath.replace(self.filepath)


def _check_transition(entry: Optional[ProxyEntry], target: ProxyState) -> None:
    current = entry.state if entry else ProxyState.UNREGISTERED
    if target not in PROXY_STATE_TRANSITIONS[current]:
        raise ProxyError(f"Invalid proxy state transition {current.value} -> {target.value}.")


class ProxyInspector:
    """Reads the EIP1967 implementation and admin slots of a proxy."""

    def __init__(self, provider: ProviderAPI):
        self._provider = provider

    def _read_address_slot(self, address: str, slot: int, label: str) -> ChecksumAddress:
        try:
            value = self._provider.get_storage(address, slot)
        except ApeProviderError as error:
            raise ProviderError(f"Could not read storage of {address}: {error}") from error

        value = HexBytes(value)
        if not any(value):
            raise ProxyError(
                f"{label.capitalize()} slot for contract at {address} is empty. "
                "Are you sure this is an EIP1967-compatible proxy?"
            )
        return to_checksum_address(value[-20:])

    def resolve_implementation_address(self, proxy_address: str) -> ChecksumAddress:
        return self._read_address_slot(proxy_address, EIP1967_IMPLEMENTATION_SLOT, "implementation")

    def resolve_admin_address(self, proxy_address: str) -> ChecksumAddress:
        return self._read_address_slot(proxy_address, EIP1967_ADMIN_SLOT, "admin")

    def runtime_code_matches(self, address: str, container: ContractContainer) -> bool:
        expected = container.contract_type.get_runtime_bytecode()
        if not expected:
            return False
        return HexBytes(self._provider.get_code(address)) == HexBytes(expected)


class ProxyLifecycleManager(ProxyInspector):
    """
    Deploys, reconciles and upgrades OpenZeppelin transparent proxies.

    Every transaction issued here uses a bounded confirmation window.
    """

    def __init__(
        self,
        submitter: TransactionSubmitter,
        provider: ProviderAPI,
        manifest: ProxyManifest,
        proxy_container: ContractContainer,
        proxy_admin_container: ContractContainer,
        window: Optional[ConfirmationWindow] = None,
    ):
        super().__init__(provider)
        self._submitter = submitter
        self.manifest = manifest
        self._proxy_container = proxy_container
        self._proxy_admin_container = proxy_admin_container
        self._window = window or ConfirmationWindow()

    def state(self, proxy_address: str) -> ProxyState:
        return self.manifest.state(proxy_address)

    #
    # Lifecycle
    #

    @staticmethod
    def _encode_initializer(
        implementation: ContractInstance, initializer: str, init_args: Sequence[Any]
    ) -> bytes:
        try:
            method_handler = getattr(implementation, initializer)
        except AttributeError:
            raise ConfigurationError(
                f"{implementation.contract_type.name} has no initializer '{initializer}'."
            )
        return method_handler.encode_input(*init_args)

    def deploy_proxy(
        self,
        container: ContractContainer,
        init_args: Sequence[Any] = (),
        initializer: str = DEFAULT_INITIALIZER,
    ) -> ChecksumAddress:
        """
        Deploys an implementation plus a TransparentUpgradeableProxy pointing at it.
        The initializer is executed exactly once, by the proxy constructor.
        """
        contract_name = container.contract_type.name
        implementation = self._submitter.deploy(container, window=self._window)
        data = self._encode_initializer(implementation.instance, initializer, init_args)

        print(
            f"\nDeploying {self._proxy_container.contract_type.name} "
            f"contract to proxy {contract_name}."
        )
        proxy = self._submitter.deploy(
            self._proxy_container,
            implementation.address,  # _logic
            self._submitter.address,  # initialOwner of the proxy admin
            data,  # _data
            window=self._window,
        )
        admin = self.resolve_admin_address(proxy.address)

        entry = ProxyEntry(
            address=proxy.address,
            contract=contract_name,
            admin=admin,
            implementation=implementation.address,
            state=ProxyState.PROXY_DEPLOYED,
            implementations=[implementation.address],
        )
        _check_transition(self.manifest.get(proxy.address), entry.state)
        self.manifest.save(entry)
        print(
            f"(i) {contract_name} proxy deployed at {proxy.address} "
            f"(implementation {implementation.address}, admin {admin})."
        )
        return proxy.address

    def force_import(self, proxy_address: str, container: ContractContainer) -> ProxyEntry:
        """
        Registers an on-chain proxy whose deployment is not recorded locally.
        Repeated imports of an unchanged proxy leave the manifest untouched.
        """
        proxy_address = to_checksum_address(proxy_address)
        contract_name = container.contract_type.name
        implementation = self.resolve_implementation_address(proxy_address)
        admin = self.resolve_admin_address(proxy_address)

        existing = self.manifest.get(proxy_address)
        if existing and (existing.implementation, existing.admin) == (implementation, admin):
            print(f"(i) {contract_name} proxy at {proxy_address} already registered.")
            return existing

        if existing:
            # on-chain state moved on without us (e.g. another machine upgraded it)
            entry = existing._replace(
                contract=contract_name,
                admin=admin,
                implementation=implementation,
                implementations=existing.implementations + [implementation],
            )
        else:
            entry = ProxyEntry(
                address=proxy_address,
                contract=contract_name,
                admin=admin,
                implementation=implementation,
                state=ProxyState.PROXY_DEPLOYED,
                implementations=[implementation],
            )
        self.manifest.save(entry)
        print(f"(i) {contract_name} proxy force-imported at {proxy_address}.")
        return entry

    def upgrade_proxy(
        self,
        proxy_address: str,
        container: ContractContainer,
        redeploy_implementation: RedeployPolicy = RedeployPolicy.ALWAYS,
        data: bytes = b"",
    ) -> ChecksumAddress:
        """Points the proxy at a new implementation and returns the implementation address."""
        proxy_address = to_checksum_address(proxy_address)
        contract_name = container.contract_type.name

        entry = self.manifest.get(proxy_address)
        if entry is None:
            raise ManifestMismatchError(
                f"Proxy at {proxy_address} is not registered in {self.manifest.filepath}; "
                "force-import it before upgrading."
            )
        _check_transition(entry, ProxyState.UPGRADED)

        old_implementation = self.resolve_implementation_address(proxy_address)
        if old_implementation != entry.implementation:
            raise ManifestMismatchError(
                f"Manifest records implementation {entry.implementation} for {proxy_address} "
                f"but the proxy points at {old_implementation}; force-import it again."
            )
        print(f"(i) Old implementation address: {old_implementation}")

        proxy_admin = self._proxy_admin_container.at(entry.admin)
        print(f"(i) Proxy admin address: {entry.admin}")
        print(f"(i) Proxy admin owner: {proxy_admin.owner()}")
        print(f"(i) Deployer: {self._submitter.address}")

        if redeploy_implementation is RedeployPolicy.ON_CHANGE and self.runtime_code_matches(
            old_implementation, container
        ):
            print(f"(i) {contract_name} implementation unchanged; skipping upgrade.")
            return old_implementation

        implementation = self._submitter.deploy(container, window=self._window).address

        print(f"\nUpgrading {contract_name} proxy at {proxy_address}.")
        self._submitter.transact(
            proxy_admin.upgradeAndCall, proxy_address, implementation, data, window=self._window
        )

        new_implementation = self.resolve_implementation_address(proxy_address)
        if new_implementation != implementation:
            raise ProxyError(
                f"Proxy at {proxy_address} points at {new_implementation} "
                f"after upgrading to {implementation}."
            )
        self.manifest.save(
            entry._replace(
                contract=contract_name,
                implementation=new_implementation,
                state=ProxyState.UPGRADED,
                implementations=entry.implementations + [new_implementation],
            )
        )
        print(f"(i) New implementation address: {new_implementation}")
        return new_implementation

    def mark_verified(self, proxy_address: str, implementation: ChecksumAddress) -> None:
        entry = self.manifest.get(proxy_address)
        if entry is None:
            return
        state = entry.state
        if ProxyState.IMPLEMENTATION_VERIFIED in PROXY_STATE_TRANSITIONS[state]:
            state = ProxyState.IMPLEMENTATION_VERIFIED
        self.manifest.save(
            entry._replace(state=state, verified_implementation=to_checksum_address(implementation))
        )
