import copy
from types import SimpleNamespace
from typing import Optional

import pytest
from ape import project
from ape.exceptions import ContractLogicError
from ape.exceptions import ProviderError as ApeProviderError
from eth_utils import to_checksum_address
from hexbytes import HexBytes
from web3.exceptions import TransactionNotFound

from kigu_deployment.artifacts import ArtifactStore
from kigu_deployment.constants import EIP1967_ADMIN_SLOT, EIP1967_IMPLEMENTATION_SLOT
from kigu_deployment.exceptions import AbiNotFound
from kigu_deployment.fees import FeeOracle
from kigu_deployment.orchestrator import Orchestrator
from kigu_deployment.proxy import ProxyLifecycleManager, ProxyManifest
from kigu_deployment.transactions import TransactionSubmitter
from kigu_deployment.verification import VerificationService

# Common constants
GWEI = 10**9
CHAIN_ID = 84532
PERCENT_BASIS = 10_000


def fake_address(number: int) -> str:
    return to_checksum_address(f"0x{number:040x}")


def _slot_value(address: str) -> bytes:
    return bytes(12) + bytes(HexBytes(address))


def _sender_of(sender):
    if sender is None or hasattr(sender, "address"):
        return sender
    return SimpleNamespace(address=sender)


class FakeReceipt:
    def __init__(self, txn_hash, block_number, failed=False, contract_address=None):
        self.txn_hash = txn_hash
        self.block_number = block_number
        self.failed = failed
        self.contract_address = contract_address

    def _replace(self, **kwargs):
        fields = dict(vars(self), **kwargs)
        return FakeReceipt(**fields)


class FakeTransaction:
    """A prepared, not yet broadcast transaction."""

    def __init__(self, execute):
        self.execute = execute

    def serialize_transaction(self):
        return self


class FakeEth:
    def __init__(self, chain):
        self._chain = chain

    def send_raw_transaction(self, raw_transaction):
        chain = self._chain
        chain._check_reachable()
        receipt = raw_transaction.execute()
        chain.receipts[receipt.txn_hash] = receipt
        chain.pending[receipt.txn_hash] = chain.pending_polls
        return HexBytes(receipt.txn_hash)

    def get_transaction_receipt(self, txn_hash):
        chain = self._chain
        chain.receipt_queries.append(txn_hash)
        if chain.pending.get(txn_hash, 0) > 0:
            chain.pending[txn_hash] -= 1
            raise TransactionNotFound(f"Transaction with hash {txn_hash} not found.")
        return {"transactionHash": txn_hash}


class FakeChain:
    """An in-memory chain standing in for the ape provider and chain manager."""

    def __init__(self):
        self._block = 0
        self._next_address = 0x1000
        self.reachable = True
        self.pending_polls = 0  # receipt polls answered with "not found" after a broadcast
        self.next_base_fee = 10 * GWEI
        self.next_priority_fee = GWEI
        self.fee_queries = 0
        self.storage = dict()
        self.code = dict()
        self.state = dict()
        self.containers = dict()
        self.calldata = dict()
        self.transactions = list()
        self.receipts = dict()
        self.pending = dict()
        self.receipt_queries = list()
        self.web3 = SimpleNamespace(eth=FakeEth(self))

    # chain manager

    @property
    def provider(self):
        return self

    @property
    def blocks(self):
        return self

    @property
    def height(self) -> int:
        return self._block

    def mine(self, contract_address=None) -> FakeReceipt:
        self._block += 1
        return FakeReceipt(
            txn_hash=f"0x{self._block:064x}",
            block_number=self._block,
            contract_address=contract_address,
        )

    def new_address(self) -> str:
        address = fake_address(self._next_address)
        self._next_address += 1
        return address

    def snapshot(self):
        return (
            copy.deepcopy(self.state),
            copy.deepcopy(self.storage),
            dict(self.code),
            dict(self.containers),
            self._next_address,
        )

    def restore(self, snapshot):
        self.state, self.storage, self.code, self.containers, self._next_address = snapshot

    # provider

    def _check_reachable(self):
        if not self.reachable:
            raise ApeProviderError("Connection refused")

    @property
    def base_fee(self) -> int:
        self._check_reachable()
        self.fee_queries += 1
        return self.next_base_fee

    @property
    def priority_fee(self) -> int:
        self._check_reachable()
        return self.next_priority_fee

    def get_storage(self, address, slot, block_id=None):
        self._check_reachable()
        return self.storage.get(address, dict()).get(slot, bytes(32))

    def get_code(self, address, block_id=None):
        return self.code.get(address, b"")

    def get_receipt(self, txn_hash, **kwargs):
        return self.receipts[txn_hash]

    def set_slot(self, address, slot, value_address):
        self.storage.setdefault(address, dict())[slot] = _slot_value(value_address)

    # execution

    def execute_deploy(self, container, sender, args, fees) -> "FakeInstance":
        address = self.new_address()
        instance = FakeInstance(container, address)
        self.containers[address] = container
        if container.on_deploy:
            container.on_deploy(self, instance, _sender_of(sender), *args)
        self.code[address] = container.runtime_code
        instance.receipt = self.mine(contract_address=address)
        self.transactions.append(
            SimpleNamespace(kind="deploy", label=container.contract_type.name, args=args, fees=fees)
        )
        return instance

    def execute_call(self, method, sender, args, fees) -> FakeReceipt:
        label = f"{method.contract.contract_type.name}.{method.name}"
        method.handler(self, method.contract, _sender_of(sender), *args)
        self.transactions.append(SimpleNamespace(kind="call", label=label, args=args, fees=fees))
        return self.mine()

    def deployments_of(self, contract_name):
        return [t for t in self.transactions if t.kind == "deploy" and t.label == contract_name]

    def calls_of(self, label):
        return [t for t in self.transactions if t.kind == "call" and t.label == label]


def _abi(name, inputs, stateful=True):
    return SimpleNamespace(
        name=name,
        inputs=[SimpleNamespace(name=n, type=t) for n, t in inputs],
        is_stateful=stateful,
    )


class FakeMethod:
    def __init__(self, instance, name, inputs, handler):
        self.contract = instance
        self.name = name
        self.abis = [_abi(name, inputs)]
        self.handler = handler

    @property
    def _chain(self):
        return self.contract.container.chain

    def __call__(self, *args, sender=None, **kwargs):
        return self._chain.execute_call(self, sender, args, kwargs)

    def as_transaction(self, *args, sender=None, **kwargs):
        return FakeTransaction(lambda: self._chain.execute_call(self, sender, args, kwargs))

    def call(self, *args, sender=None, **kwargs):
        chain = self._chain
        snapshot = chain.snapshot()
        try:
            return self.handler(chain, self.contract, _sender_of(sender), *args)
        finally:
            chain.restore(snapshot)

    def encode_input(self, *args) -> bytes:
        data = f"{self.name}:{len(self._chain.calldata)}".encode()
        self._chain.calldata[data] = (self.name, args)
        return data


class FakeView:
    def __init__(self, instance, name, inputs, handler):
        self.contract = instance
        self.name = name
        self.abis = [_abi(name, inputs, stateful=False)]
        self.handler = handler

    def __call__(self, *args, **kwargs):
        return self.handler(self.contract.container.chain, self.contract, *args)


class FakeInstance:
    def __init__(self, container, address, receipt=None):
        self.container = container
        self.contract_type = container.contract_type
        self.address = address
        self.receipt = receipt

    @property
    def state(self):
        return self.container.chain.state.setdefault(self.address, dict())

    def __getattr__(self, name):
        container = self.__dict__["container"]
        if name in container.methods:
            inputs, handler = container.methods[name]
            return FakeMethod(self, name, inputs, handler)
        if name in container.views:
            inputs, handler = container.views[name]
            return FakeView(self, name, inputs, handler)
        raise AttributeError(name)


class FakeContractType:
    def __init__(self, container, name):
        self._container = container
        self.name = name

    @property
    def methods(self):
        methods = [_abi(n, inputs) for n, (inputs, _) in self._container.methods.items()]
        views = [_abi(n, inputs, False) for n, (inputs, _) in self._container.views.items()]
        return methods + views

    def get_runtime_bytecode(self):
        return self._container.runtime_code


class FakeConstructor:
    def __init__(self, container, inputs):
        self.container = container
        self.abi = _abi("constructor", inputs)

    def serialize_transaction(self, *args, sender=None, **kwargs):
        container = self.container
        return FakeTransaction(
            lambda: container.chain.execute_deploy(container, sender, args, kwargs).receipt
        )


class FakeContainer:
    def __init__(
        self,
        chain,
        name,
        constructor_inputs=(),
        on_deploy=None,
        methods=None,
        views=None,
        runtime_code=None,
    ):
        self.chain = chain
        self.on_deploy = on_deploy
        self.methods = methods or dict()
        self.views = views or dict()
        self.runtime_code = runtime_code if runtime_code is not None else name.encode()
        self.contract_type = FakeContractType(self, name)
        self.constructor = FakeConstructor(self, constructor_inputs)

    def at(self, address):
        return FakeInstance(self, address)


class FakeAccount:
    def __init__(self, chain, address):
        self.chain = chain
        self.address = address
        self.declines = False

    def deploy(self, container, *args, **kwargs):
        return self.chain.execute_deploy(container, self, args, kwargs)

    def prepare_transaction(self, txn):
        return txn

    def sign_transaction(self, txn) -> Optional[FakeTransaction]:
        return None if self.declines else txn


class FakeExplorer:
    def __init__(self):
        self.published = list()
        self.error = None

    def publish(self, address, constructor_args):
        self.published.append((address, list(constructor_args)))
        if self.error is not None:
            raise self.error


#
# Contracts
#


def _only_owner(instance, sender):
    owner = instance.state.get("owner")
    if owner is not None and sender is not None and sender.address != owner:
        raise ContractLogicError("Ownable: caller is not the owner")


def _ownable_constructor(chain, instance, sender, *args):
    instance.state["owner"] = sender.address


def _owner(chain, instance):
    return instance.state.get("owner")


def _initial_mint(chain, instance, sender, receiver, wallets, percents):
    if instance.state.get("minted"):
        raise ContractLogicError("Initial mint already done")
    instance.state.update(minted=True, receiver=receiver)


def _set_minter(chain, instance, sender, minter):
    _only_owner(instance, sender)
    instance.state["minter"] = minter


def _initialize_emission(chain, instance, sender, token):
    if instance.state.get("initialized"):
        raise ContractLogicError("Initializable: contract is already initialized")
    instance.state.update(initialized=True, token=token, owner=sender.address)
    instance.state["initialize_calls"] = instance.state.get("initialize_calls", 0) + 1


def _set_wallets_and_percents(chain, instance, sender, wallets, percents):
    if len(wallets) != len(percents):
        raise ContractLogicError("Length mismatch")
    if sum(percents) != PERCENT_BASIS:
        raise ContractLogicError("Percents must sum to 10000")
    instance.state.update(wallets=list(wallets), percents=list(percents))


def _set_emission_manager(chain, instance, sender, manager):
    instance.state["emission_manager"] = manager


def _minter_constructor(chain, instance, sender, token, emission):
    instance.state.update(token=token, emission=emission)


def _proxy_constructor(chain, instance, sender, logic, initial_owner, data):
    admin = chain.new_address()
    chain.state[admin] = {"owner": initial_owner}
    chain.containers[admin] = chain.proxy_admin_container
    chain.set_slot(instance.address, EIP1967_IMPLEMENTATION_SLOT, logic)
    chain.set_slot(instance.address, EIP1967_ADMIN_SLOT, admin)
    if data:
        method, args = chain.calldata[bytes(data)]
        logic_container = chain.containers[logic]
        _, handler = logic_container.methods[method]
        # the initializer runs in the storage context of the proxy
        handler(chain, FakeInstance(logic_container, instance.address), sender, *args)


def _upgrade_and_call(chain, instance, sender, proxy, implementation, data):
    _only_owner(instance, sender)
    chain.set_slot(proxy, EIP1967_IMPLEMENTATION_SLOT, implementation)


def _transfer_ownership(chain, instance, sender, new_owner):
    _only_owner(instance, sender)
    instance.state["owner"] = new_owner


def _record_args(*names):
    def constructor(chain, instance, sender, *args):
        instance.state.update(zip(names, args))

    return constructor


def _create(chain, contract_name, **state) -> str:
    address = chain.new_address()
    chain.containers[address] = chain.contract_containers[contract_name]
    chain.code[address] = chain.containers[address].runtime_code
    chain.state[address] = dict(state)
    return address


def _helper_constructor(chain, instance, sender):
    # the helper owns nothing; the foundation (deployer) receives the supply
    token = _create(chain, "SuperChampsToken", holder=sender.address, allowances=dict())
    permissions = _create(chain, "PermissionsManager", roles=dict())
    instance.state.update(token=token, permissions=permissions)


def _initialize_emissions(chain, instance, sender, treasury, amount, start):
    token_state = chain.state[instance.state["token"]]
    if token_state["allowances"].get(instance.address, 0) < amount:
        raise ContractLogicError("ERC20: insufficient allowance")
    token_state["allowances"][instance.address] -= amount
    return _create(
        chain, "ExponentialVestingEscrow", recipient=treasury, amount=amount, start=start
    )


def _approve(chain, instance, sender, spender, amount):
    instance.state["allowances"][spender] = amount


def _add_role(chain, instance, sender, role, account):
    instance.state.setdefault("roles", dict()).setdefault(role, list()).append(account)


def build_contracts(chain):
    address_list = "address[]"
    contracts = dict()
    contracts["KiguToken"] = FakeContainer(
        chain,
        "KiguToken",
        on_deploy=_ownable_constructor,
        methods={
            "initialMint": (
                [("to", "address"), ("wallets", address_list), ("percents", "uint256[]")],
                _initial_mint,
            ),
            "setMinter": ([("minter", "address")], _set_minter),
        },
    )
    contracts["KiguEmission"] = FakeContainer(
        chain,
        "KiguEmission",
        methods={
            "initialize": ([("token", "address")], _initialize_emission),
            "setWalletsAndPercents": (
                [("wallets", address_list), ("percents", "uint256[]")],
                _set_wallets_and_percents,
            ),
            "setEmissionManager": ([("manager", "address")], _set_emission_manager),
            "setMinter": ([("minter", "address")], _set_minter),
        },
    )
    contracts["KiguMinter"] = FakeContainer(
        chain,
        "KiguMinter",
        constructor_inputs=[("token", "address"), ("emission", "address")],
        on_deploy=_minter_constructor,
    )
    contracts["SCLock"] = FakeContainer(
        chain,
        "SCLock",
        constructor_inputs=[("token", "address")],
        methods={"initialize": ([("token", "address")], _initialize_emission)},
        views={"owner": ([], _owner)},
    )
    contracts["PermissionsManager"] = FakeContainer(
        chain,
        "PermissionsManager",
        methods={"addRole": ([("role", "uint8"), ("account", "address")], _add_role)},
    )
    contracts["SCSeasonRewards"] = FakeContainer(
        chain,
        "SCSeasonRewards",
        constructor_inputs=[
            ("permissions", "address"),
            ("token", "address"),
            ("treasury", "address"),
            ("access_pass", "address"),
            ("staking_pool", "address"),
        ],
        on_deploy=_record_args("permissions", "token", "treasury", "access_pass", "staking_pool"),
    )
    contracts["SCDeploymentHelper"] = FakeContainer(
        chain,
        "SCDeploymentHelper",
        on_deploy=_helper_constructor,
        methods={
            "initializeEmmissions": (
                [("treasury", "address"), ("amount", "uint256"), ("start", "uint256")],
                _initialize_emissions,
            ),
        },
        views={
            "getERC20Address": ([], lambda chain, instance: instance.state["token"]),
            "getPermissionManagerAddress": (
                [],
                lambda chain, instance: instance.state["permissions"],
            ),
        },
    )
    contracts["SuperChampsToken"] = FakeContainer(
        chain,
        "SuperChampsToken",
        methods={"approve": ([("spender", "address"), ("amount", "uint256")], _approve)},
    )
    contracts["ExponentialVestingEscrow"] = FakeContainer(chain, "ExponentialVestingEscrow")
    contracts["SCRewardsDispenser"] = FakeContainer(
        chain,
        "SCRewardsDispenser",
        constructor_inputs=[("permissions", "address"), ("token", "address")],
        on_deploy=_record_args("permissions", "token"),
    )
    contracts["SCAccessPass"] = FakeContainer(
        chain,
        "SCAccessPass",
        constructor_inputs=[
            ("permissions", "address"),
            ("name", "string"),
            ("symbol", "string"),
            ("uri", "string"),
        ],
        on_deploy=_record_args("permissions", "name", "symbol", "uri"),
    )
    contracts["TransparentUpgradeableProxy"] = FakeContainer(
        chain,
        "TransparentUpgradeableProxy",
        constructor_inputs=[("_logic", "address"), ("initialOwner", "address"), ("_data", "bytes")],
        on_deploy=_proxy_constructor,
    )
    contracts["ProxyAdmin"] = FakeContainer(
        chain,
        "ProxyAdmin",
        constructor_inputs=[("initialOwner", "address")],
        methods={
            "upgradeAndCall": (
                [("proxy", "address"), ("implementation", "address"), ("data", "bytes")],
                _upgrade_and_call,
            ),
            "transferOwnership": ([("newOwner", "address")], _transfer_ownership),
        },
        views={"owner": ([], _owner)},
    )
    chain.proxy_admin_container = contracts["ProxyAdmin"]
    chain.contract_containers = contracts
    return contracts


def fake_abi(contract_name):
    return [
        {"type": "function", "name": f"{contract_name[:1].lower()}{contract_name[1:]}Version"},
        {"type": "event", "name": "OwnershipTransferred"},
    ]


KNOWN_CONTRACTS = (
    "KiguToken",
    "KiguEmission",
    "KiguMinter",
    "SCLock",
    "PermissionsManager",
    "SCSeasonRewards",
    "SCDeploymentHelper",
    "SuperChampsToken",
    "ExponentialVestingEscrow",
    "SCRewardsDispenser",
    "SCAccessPass",
)


def fake_abi_resolver(contract_name):
    if contract_name not in KNOWN_CONTRACTS:
        raise AbiNotFound(f"No contract found with name '{contract_name}'.")
    return fake_abi(contract_name)


# Fixtures


@pytest.fixture(scope="session")
def oz_dependency():
    return project.dependencies["openzeppelin"]["5.0.0"]


@pytest.fixture
def creator(accounts):
    return accounts[0]


@pytest.fixture
def fake_chain():
    return FakeChain()


@pytest.fixture
def contracts(fake_chain):
    return build_contracts(fake_chain)


@pytest.fixture
def contract_resolver(contracts):
    def resolve(contract_name):
        try:
            return contracts[contract_name]
        except KeyError:
            raise AbiNotFound(f"No contract found with name '{contract_name}'.")

    return resolve


@pytest.fixture
def deployer(fake_chain):
    return FakeAccount(fake_chain, fake_chain.new_address())


@pytest.fixture
def submitter(deployer, fake_chain):
    return TransactionSubmitter(account=deployer, fee_oracle=FeeOracle(fake_chain), chain=fake_chain)


@pytest.fixture
def manifest(tmp_path):
    return ProxyManifest.for_chain(CHAIN_ID, directory=tmp_path / ".manifests")


@pytest.fixture
def proxies(submitter, fake_chain, manifest, contracts):
    return ProxyLifecycleManager(
        submitter=submitter,
        provider=fake_chain,
        manifest=manifest,
        proxy_container=contracts["TransparentUpgradeableProxy"],
        proxy_admin_container=contracts["ProxyAdmin"],
    )


@pytest.fixture
def explorer():
    return FakeExplorer()


@pytest.fixture
def verifier(explorer, proxies):
    return VerificationService(explorer=explorer, proxies=proxies)


@pytest.fixture
def artifacts(tmp_path):
    return ArtifactStore(
        directory=tmp_path / "generated", abi_resolver=fake_abi_resolver, environ={}
    )


@pytest.fixture
def make_orchestrator(submitter, artifacts, verifier, proxies, contract_resolver):
    def _make(plan):
        return Orchestrator(
            plan=plan,
            submitter=submitter,
            artifacts=artifacts,
            verifier=verifier,
            proxies=proxies,
            resolver=contract_resolver,
            autosign=True,
        )

    return _make
