import sys
from collections import OrderedDict, defaultdict
from pathlib import Path
from typing import Any, Callable, List, Optional

from ape import chain, networks
from ape.contracts.base import ContractContainer
from ape.exceptions import ApeException
from ape.utils import ZERO_ADDRESS
from eth_typing import ChecksumAddress
from web3.auto import w3

from kigu_deployment.accounts import get_deployer_account
from kigu_deployment.artifacts import ArtifactStore
from kigu_deployment.confirm import _confirm_resolution, _continue
from kigu_deployment.constants import PROXY_ADMIN_CONTRACT_NAME, PROXY_CONTRACT_NAME
from kigu_deployment.exceptions import (
    ConfigurationError,
    DeploymentError,
    PlanAborted,
    VerificationError,
)
from kigu_deployment.fees import FeeOracle
from kigu_deployment.params import (
    DeploymentPlan,
    FailurePolicy,
    ResolutionContext,
    Step,
    StepKind,
    resolve_param,
    resolve_params,
)
from kigu_deployment.proxy import ProxyLifecycleManager, ProxyManifest
from kigu_deployment.transactions import TransactionSubmitter, _validate_method_args, is_read_only
from kigu_deployment.utils import (
    autosign_enabled,
    check_etherscan_plugin,
    get_contract_container,
    is_local_network,
    validate_chain_id,
)
from kigu_deployment.verification import ApeExplorer, VerificationResult, VerificationService


class DeploymentReport:
    """The outcome of a plan execution."""

    def __init__(self, plan_name: str):
        self.plan_name = plan_name
        self.addresses = OrderedDict()  # step name -> produced address
        self.verifications: List[VerificationResult] = list()
        self.completed: List[str] = list()


def _validate_abi_inputs(contract_name: str, abi_inputs, args: List[Any]) -> None:
    """Validates constructor arguments against the constructor ABI."""
    if len(abi_inputs) != len(args):
        raise ConfigurationError(
            f"Constructor parameters length mismatch - "
            f"{contract_name} ABI requires {len(abi_inputs)}, Got {len(args)}."
        )
    for position, (abi_input, arg) in enumerate(zip(abi_inputs, args)):
        if not w3.is_encodable(abi_input.type, arg):
            raise ConfigurationError(
                f"Constructor param name '{abi_input.name}' at position {position} has a value "
                f"'{arg}' whose type does not match expected ABI type '{abi_input.type}'"
            )


def _validate_address(step_name: str, field: str, value: Any) -> None:
    if not w3.is_encodable("address", value):
        raise ConfigurationError(f"Step '{step_name}' has an invalid {field} address '{value}'.")


def _method_abis(container: ContractContainer, contract_name: str, method_name: str) -> List:
    method_abis = [abi for abi in container.contract_type.methods if abi.name == method_name]
    if not method_abis:
        raise ConfigurationError(f"{contract_name} has no method '{method_name}'.")
    return method_abis


class Orchestrator:
    """
    Executes a deployment plan strictly in order.

    Step N+1 never starts before step N is confirmed on-chain. The first fatal
    error halts the plan; nothing already broadcast is undone.
    """

    def __init__(
        self,
        plan: DeploymentPlan,
        submitter: TransactionSubmitter,
        artifacts: ArtifactStore,
        verifier: VerificationService,
        proxies: ProxyLifecycleManager,
        resolver: Callable[[str], ContractContainer] = get_contract_container,
        autosign: bool = True,
    ):
        self.plan = plan
        self.submitter = submitter
        self.artifacts = artifacts
        self.verifier = verifier
        self.proxies = proxies
        self._resolver = resolver
        self._autosign = autosign

    @classmethod
    def from_ape(
        cls,
        plan: DeploymentPlan,
        verify: bool = True,
        autosign: Optional[bool] = None,
    ) -> "Orchestrator":
        """Wires the orchestrator to the network ape is connected to."""
        autosign = autosign_enabled() if autosign is None else autosign
        validate_chain_id(plan.chain_id)

        verify = verify and not is_local_network()
        explorer = networks.provider.network.explorer
        if verify:
            check_etherscan_plugin()
            if explorer is None:
                raise ConfigurationError(
                    f"No block explorer configured for {networks.provider.network.name}."
                )

        account = get_deployer_account(autosign=autosign)
        submitter = TransactionSubmitter(
            account=account, fee_oracle=FeeOracle(networks.provider), chain=chain
        )
        proxies = ProxyLifecycleManager(
            submitter=submitter,
            provider=networks.provider,
            manifest=ProxyManifest.for_chain(networks.provider.network.chain_id),
            proxy_container=get_contract_container(PROXY_CONTRACT_NAME),
            proxy_admin_container=get_contract_container(PROXY_ADMIN_CONTRACT_NAME),
        )
        verifier = VerificationService(
            explorer=ApeExplorer(explorer) if explorer else None,
            proxies=proxies,
            enabled=verify,
        )
        return cls(
            plan=plan,
            submitter=submitter,
            artifacts=ArtifactStore(),
            verifier=verifier,
            proxies=proxies,
            autosign=autosign,
        )

    def run(self) -> DeploymentReport:
        self._print_deployment_info()
        self.validate()
        if not self._autosign:
            # Confirms the start of the deployment.
            _continue()

        report = DeploymentReport(self.plan.name)
        context = ResolutionContext(
            deployer=self.submitter.address,
            addresses=report.addresses,
            admin_resolver=self.proxies.resolve_admin_address,
            artifact_resolver=self._artifact_address,
        )
        total = len(self.plan)
        for position, step in enumerate(self.plan, start=1):
            print(f"\n[{position}/{total}] {step.name} ({step.kind.value})")
            try:
                self._execute(step, context, report)
            except (DeploymentError, ApeException) as error:
                print(f"(!) {step.name} failed: {error}")
                raise PlanAborted(step_name=step.name, cause=error) from error
            report.completed.append(step.name)
            print(f"(i) {step.name} done.")

        print(f"\n(i) Deployment plan '{self.plan.name}' complete.")
        return report

    #
    # Eager validation
    #

    def validate(self) -> None:
        """
        Checks every step's arguments against its contract ABI before anything is sent.

        Addresses that only exist once earlier steps have run are validated
        as the zero address.
        """
        print("\nValidating deployment plan...")
        planned_artifacts = {
            step.address_contract for step in self.plan if step.produces_address and step.artifact
        }

        def artifact_address(contract_name: str) -> ChecksumAddress:
            if contract_name in planned_artifacts:
                return ZERO_ADDRESS
            return self._artifact_address(contract_name)

        context = ResolutionContext(
            deployer=self.submitter.address,
            addresses=defaultdict(lambda: ZERO_ADDRESS),
            admin_resolver=lambda proxy_address: ZERO_ADDRESS,
            artifact_resolver=artifact_address,
        )
        for step in self.plan:
            try:
                self._validate_step(step, context)
            except (DeploymentError, ApeException) as error:
                print(f"(!) {step.name} is invalid: {error}")
                raise PlanAborted(step_name=step.name, cause=error) from error

    def _validate_step(self, step: Step, context: ResolutionContext) -> None:
        args = resolve_params(step.args, context)
        container = self._resolver(step.contract)
        if step.kind is StepKind.DEPLOY:
            _validate_abi_inputs(step.contract, container.constructor.abi.inputs, args)
        elif step.kind is StepKind.CALL:
            _validate_address(step.name, "target", resolve_param(step.target, context))
            method_abis = _method_abis(container, step.contract, step.method)
            _validate_method_args(method_abis, args)
        elif step.kind is StepKind.PROXY_DEPLOY:
            method_abis = _method_abis(container, step.contract, step.initializer)
            _validate_method_args(method_abis, args)
        elif step.kind is StepKind.PROXY_UPGRADE:
            _validate_address(step.name, "proxy", resolve_param(step.proxy, context))

    #
    # Execution
    #

    def _artifact_address(self, contract_name: str) -> ChecksumAddress:
        try:
            return self.artifacts.read_record(contract_name).address
        except (FileNotFoundError, ValueError) as error:
            raise ConfigurationError(str(error)) from error

    def _execute(self, step: Step, context: ResolutionContext, report: DeploymentReport) -> None:
        args = resolve_params(step.args, context)
        if not self._autosign:
            _confirm_resolution(step.name, args)

        container = self._resolver(step.contract)
        if step.kind is StepKind.DEPLOY:
            address = self.submitter.deploy(container, *args).address
        elif step.kind is StepKind.CALL:
            address = self._call(step, container, args, context)
            if not step.produces_address:
                return
        elif step.kind is StepKind.PROXY_DEPLOY:
            address = self.proxies.deploy_proxy(container, args, step.initializer)
        elif step.kind is StepKind.PROXY_UPGRADE:
            address = resolve_param(step.proxy, context)
            if step.force_import:
                self.proxies.force_import(address, container)
            self.proxies.upgrade_proxy(address, container, step.redeploy_implementation)
        else:
            raise ConfigurationError(f"Unsupported step kind {step.kind}.")

        print(f"(i) {step.address_contract or step.name} at {address}")
        if step.artifact:
            self.artifacts.write_record(step.address_contract, address)
        report.addresses[step.name] = address
        if step.verify:
            self._verify(step, address, args, report)

    def _call(
        self,
        step: Step,
        container: ContractContainer,
        args: List[Any],
        context: ResolutionContext,
    ) -> Optional[ChecksumAddress]:
        """
        Invokes a method of an existing contract.

        Read-only methods are only called. For an address-producing step the
        return value is read before the transaction is sent.
        """
        target = resolve_param(step.target, context)
        instance = container.at(target)
        try:
            method = getattr(instance, step.method)
        except AttributeError:
            raise ConfigurationError(f"{step.contract} has no method '{step.method}'.")

        address = None
        if step.produces_address:
            address = self.submitter.call_for_address(method, *args)
        elif is_read_only(method):
            self.submitter.call(method, *args)
        if not is_read_only(method):
            self.submitter.transact(method, *args)
        return address

    def _verify(
        self, step: Step, address: ChecksumAddress, args: List[Any], report: DeploymentReport
    ) -> None:
        if step.kind in (StepKind.PROXY_DEPLOY, StepKind.PROXY_UPGRADE):
            result = self.verifier.verify_proxy(step.contract, address)
            if result.verified:
                self.proxies.mark_verified(address, result.address)
        else:
            result = self.verifier.verify(step.contract, address, args)

        report.verifications.append(result)
        if result.failed and step.on_verification_failure is FailurePolicy.FATAL:
            raise VerificationError(f"Verification of {result.name} failed: {result.reason}")

    def _print_deployment_info(self):
        print(
            f"Plan: {self.plan.name}",
            f"Plan file: {self.plan.path}",
            f"Steps: {len(self.plan)}",
            f"Account: {self.submitter.address}",
            f"Artifacts: {self.artifacts.directory}",
            f"Verify: {self.verifier.enabled}",
            sep="\n",
        )


def run_plan(filepath: Path, verify: bool = True) -> DeploymentReport:
    """Script entry point: executes a plan file, exiting with status 1 on any fatal error."""
    try:
        plan = DeploymentPlan.from_yaml(filepath)
        orchestrator = Orchestrator.from_ape(plan, verify=verify)
        return orchestrator.run()
    except (DeploymentError, ApeException) as error:
        print(f"(!) Deployment failed: {error}")
        sys.exit(1)
