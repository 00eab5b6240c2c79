import os
import typing
from abc import ABC, abstractmethod
from collections import OrderedDict
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, NamedTuple, Optional, Tuple

from ape.utils import ZERO_ADDRESS
from eth_typing import ChecksumAddress
from eth_utils import is_hex_address, to_checksum_address

from kigu_deployment.constants import (
    DEFAULT_INITIALIZER,
    PROXY_ADMIN_CONTRACT_NAME,
)
from kigu_deployment.exceptions import ConfigurationError
from kigu_deployment.proxy import RedeployPolicy
from kigu_deployment.utils import _load_yaml

PLAN_STEPS_KEY = "steps"
PLAN_CONSTANTS_KEY = "constants"
PLAN_DEPLOYMENT_KEY = "deployment"


class StepKind(Enum):
    DEPLOY = "deploy"
    CALL = "call"
    PROXY_DEPLOY = "proxy_deploy"
    PROXY_UPGRADE = "proxy_upgrade"


class FailurePolicy(Enum):
    WARN = "warn"
    FATAL = "fatal"


ADDRESS_PRODUCING_KINDS = (StepKind.DEPLOY, StepKind.PROXY_DEPLOY, StepKind.PROXY_UPGRADE)

# constants named like this must hold an address (or a list of addresses)
ADDRESS_CONSTANT_SUFFIXES = ("_ADDRESS", "_ADDRESSES")


class ResolutionContext:
    """What a variable can be resolved against while a plan is executing."""

    def __init__(
        self,
        deployer: ChecksumAddress,
        addresses: Optional[typing.Mapping[str, ChecksumAddress]] = None,
        admin_resolver: Optional[Callable[[str], ChecksumAddress]] = None,
        artifact_resolver: Optional[Callable[[str], ChecksumAddress]] = None,
    ):
        self.deployer = deployer
        self.addresses = addresses if addresses is not None else dict()
        self.admin_resolver = admin_resolver
        self.artifact_resolver = artifact_resolver


class VariableContext:
    """What a variable can refer to while a plan file is being loaded."""

    def __init__(
        self,
        step_name: str,
        earlier_steps: Dict[str, str],
        constants: Optional[Dict[str, Any]] = None,
    ):
        self.step_name = step_name
        self.earlier_steps = earlier_steps  # step name -> contract name
        self.constants = constants or dict()


# Variables


class Variable(ABC):
    VARIABLE_PREFIX = "$"

    @abstractmethod
    def resolve(self, context: ResolutionContext) -> Any:
        raise NotImplementedError

    @classmethod
    def is_variable(cls, param: Any) -> bool:
        """Returns True if the param is a variable."""
        result = isinstance(param, str) and param.startswith(cls.VARIABLE_PREFIX)
        return result


class DeployerAccount(Variable):
    DEPLOYER_INDICATOR = "deployer"

    @classmethod
    def is_deployer(cls, value: str) -> bool:
        """Returns True if the variable is a special deployer variable."""
        return value == cls.DEPLOYER_INDICATOR

    def resolve(self, context: ResolutionContext) -> Any:
        return context.deployer

    def __repr__(self) -> str:
        return f"${self.DEPLOYER_INDICATOR}"


class SpecialValue(Variable):
    SPECIAL_VALUES = {"ZERO_ADDRESS": ZERO_ADDRESS, "EMPTY_BYTES": b""}

    def __init__(self, name: str):
        self.name = name

    @classmethod
    def is_special(cls, value: str) -> bool:
        return value in cls.SPECIAL_VALUES

    def resolve(self, context: ResolutionContext) -> Any:
        return self.SPECIAL_VALUES[self.name]

    def __repr__(self) -> str:
        return f"${self.name}"


class Constant(Variable):
    def __init__(self, constant_name: str, context: VariableContext):
        try:
            self.constant_value = context.constants[constant_name]
        except KeyError:
            raise ConfigurationError(
                f"Constant '{constant_name}' used by step '{context.step_name}' "
                "not found in plan file."
            )
        self.constant_name = constant_name

    @classmethod
    def is_constant(cls, value: str) -> bool:
        """Returns True if the variable is a plan constant."""
        return value.isupper()

    def resolve(self, context: ResolutionContext) -> Any:
        return self.constant_value

    def __repr__(self) -> str:
        return f"${self.constant_name}"


class StepAddress(Variable):
    """The address produced by an earlier step."""

    def __init__(self, step_name: str, context: VariableContext):
        if step_name not in context.earlier_steps:
            raise ConfigurationError(
                f"Step '{context.step_name}' references '${step_name}', "
                "which is not an address produced by an earlier step."
            )
        self.step_name = step_name
        self.contract_name = context.earlier_steps[step_name]

    def resolve(self, context: ResolutionContext) -> Any:
        return context.addresses[self.step_name]

    def __repr__(self) -> str:
        return f"${self.step_name}"


class ProxyAdminAddress(Variable):
    """The ProxyAdmin of a proxy produced by an earlier step."""

    ADMIN_PREFIX = "admin:"
    contract_name = PROXY_ADMIN_CONTRACT_NAME

    def __init__(self, variable: str, context: VariableContext):
        self.proxy = StepAddress(variable[len(self.ADMIN_PREFIX) :], context)

    @classmethod
    def is_admin(cls, value: str) -> bool:
        return value.startswith(cls.ADMIN_PREFIX)

    def resolve(self, context: ResolutionContext) -> Any:
        proxy_address = self.proxy.resolve(context)
        return context.admin_resolver(proxy_address)

    def __repr__(self) -> str:
        return f"${self.ADMIN_PREFIX}{self.proxy.step_name}"


class ArtifactAddress(Variable):
    """The address recorded in a previously generated artifact."""

    ARTIFACT_PREFIX = "artifact:"

    def __init__(self, variable: str):
        self.contract_name = variable[len(self.ARTIFACT_PREFIX) :]

    @classmethod
    def is_artifact(cls, value: str) -> bool:
        return value.startswith(cls.ARTIFACT_PREFIX)

    def resolve(self, context: ResolutionContext) -> Any:
        return context.artifact_resolver(self.contract_name)

    def __repr__(self) -> str:
        return f"${self.ARTIFACT_PREFIX}{self.contract_name}"


ENV_PREFIX = "env:"


def _variable_from_value(variable: Any, context: VariableContext) -> Variable:
    variable = variable[len(Variable.VARIABLE_PREFIX) :]
    if DeployerAccount.is_deployer(variable):
        return DeployerAccount()
    elif SpecialValue.is_special(variable):
        return SpecialValue(variable)
    elif ProxyAdminAddress.is_admin(variable):
        return ProxyAdminAddress(variable, context)
    elif ArtifactAddress.is_artifact(variable):
        return ArtifactAddress(variable)
    elif variable.startswith(ENV_PREFIX):
        raise ConfigurationError(
            f"Step '{context.step_name}' uses '${variable}'; "
            "environment variables may only be used in plan constants."
        )
    elif Constant.is_constant(variable):
        return Constant(variable, context)
    else:
        return StepAddress(variable, context)


def _process_raw_value(value: Any, variable_context: VariableContext) -> Any:
    if isinstance(value, list):
        return [_process_raw_value(v, variable_context) for v in value]

    if Variable.is_variable(value):
        value = _variable_from_value(value, variable_context)

    return value


def resolve_param(value: Any, context: ResolutionContext) -> Any:
    """Resolves a single parameter value or a list of parameter values."""
    if isinstance(value, list):
        return [resolve_param(v, context) for v in value]

    if isinstance(value, Variable):
        return value.resolve(context)

    return value  # literally a value


def resolve_params(values: typing.Sequence[Any], context: ResolutionContext) -> List[Any]:
    return [resolve_param(value, context) for value in values]


# Constants


def _is_address_constant(name: str) -> bool:
    return str(name).endswith(ADDRESS_CONSTANT_SUFFIXES)


def _normalize_constant(value: Any, name: str) -> Any:
    if isinstance(value, list):
        return [_normalize_constant(v, name) for v in value]
    looks_like_address = isinstance(value, str) and value.startswith("0x") and len(value) == 42
    if _is_address_constant(name) or looks_like_address:
        if not is_hex_address(value):
            raise ConfigurationError(f"Constant {name} has an invalid address '{value}'.")
        return to_checksum_address(value)
    return value


def _process_constant(value: Any, name: str, environ: typing.Mapping[str, str]) -> Any:
    if isinstance(value, list):
        return [_process_constant(v, name, environ) for v in value]

    if Variable.is_variable(value) and value[1:].startswith(ENV_PREFIX):
        envvar = value[1 + len(ENV_PREFIX) :]
        env_value = environ.get(envvar, "").strip()
        if not env_value:
            raise ConfigurationError(f"{envvar} is not set (required by constant {name}).")
        # numeric settings arrive as strings
        value = int(env_value) if env_value.isdigit() else env_value

    return _normalize_constant(value, name)


def process_constants(
    raw_constants: Optional[Dict[str, Any]], environ: typing.Mapping[str, str]
) -> Dict[str, Any]:
    """Substitutes environment variables and checksums address constants."""
    constants = OrderedDict()
    for name, value in (raw_constants or dict()).items():
        if not str(name).isupper():
            raise ConfigurationError(f"Constant names must be upper case, got '{name}'.")
        constants[name] = _process_constant(value, name, environ)
    return constants


# Steps


class Step(NamedTuple):
    """An atomic unit of work in a deployment plan."""

    name: str
    kind: StepKind
    contract: str
    args: Tuple[Any, ...] = ()
    target: Any = None
    method: Optional[str] = None
    initializer: str = DEFAULT_INITIALIZER
    proxy: Any = None
    force_import: bool = True
    redeploy_implementation: RedeployPolicy = RedeployPolicy.ALWAYS
    verify: bool = True
    on_verification_failure: FailurePolicy = FailurePolicy.WARN
    artifact: bool = True
    produces_address: bool = True
    produced_contract: Optional[str] = None

    @property
    def address_contract(self) -> Optional[str]:
        """The contract living at the address this step produces."""
        if self.kind is StepKind.CALL:
            return self.produced_contract
        return self.contract


def _parse_enum(enum_class, value: Any, step_name: str, field: str):
    try:
        return enum_class(value)
    except ValueError:
        choices = ", ".join(member.value for member in enum_class)
        raise ConfigurationError(
            f"Step '{step_name}' has invalid {field} '{value}'; expected one of {choices}."
        )


def _target_contract(target: Any, step_name: str) -> str:
    if isinstance(target, (StepAddress, ProxyAdminAddress, ArtifactAddress)):
        if target.contract_name:
            return target.contract_name
    raise ConfigurationError(
        f"Step '{step_name}' must name the 'contract' of its literal target address."
    )


def _parse_step(step_info: Any, context: VariableContext) -> Step:
    if isinstance(step_info, str):
        # bare contract name: deploy it without constructor arguments
        return Step(name=step_info, kind=StepKind.DEPLOY, contract=step_info)

    if not isinstance(step_info, dict) or len(step_info) != 1:
        raise ConfigurationError("Malformed plan step; expected a name or a single-key mapping.")

    step_name = list(step_info.keys())[0]  # only one entry
    step_data = step_info[step_name] or dict()
    context.step_name = step_name

    kind = _parse_enum(StepKind, step_data.get("kind", StepKind.DEPLOY.value), step_name, "kind")
    args = tuple(_process_raw_value(list(step_data.get("args", [])), context))
    kwargs = dict(
        name=step_name,
        kind=kind,
        contract=step_data.get("contract", step_name),
        args=args,
        verify=bool(step_data.get("verify", True)),
        artifact=bool(step_data.get("artifact", True)),
        produces_address=kind in ADDRESS_PRODUCING_KINDS,
        on_verification_failure=_parse_enum(
            FailurePolicy,
            step_data.get("on_verification_failure", FailurePolicy.WARN.value),
            step_name,
            "on_verification_failure",
        ),
    )

    if kind is StepKind.CALL:
        if "target" not in step_data or "method" not in step_data:
            raise ConfigurationError(f"Call step '{step_name}' needs a 'target' and a 'method'.")
        target = _process_raw_value(step_data["target"], context)
        produces_address = bool(step_data.get("produces_address", False))
        produced_contract = step_data.get("produced_contract")
        if produced_contract and not produces_address:
            raise ConfigurationError(
                f"Call step '{step_name}' names a 'produced_contract' but produces no address."
            )
        artifact = bool(step_data.get("artifact", False))
        if artifact and not produced_contract:
            raise ConfigurationError(
                f"Call step '{step_name}' needs a 'produced_contract' to write an artifact."
            )
        kwargs.update(
            target=target,
            method=step_data["method"],
            contract=step_data.get("contract") or _target_contract(target, step_name),
            verify=False,
            artifact=artifact,
            produces_address=produces_address,
            produced_contract=produced_contract,
        )
    elif kind is StepKind.PROXY_DEPLOY:
        kwargs.update(initializer=step_data.get("initializer", DEFAULT_INITIALIZER))
    elif kind is StepKind.PROXY_UPGRADE:
        if "proxy" not in step_data:
            raise ConfigurationError(f"Upgrade step '{step_name}' needs a 'proxy' address.")
        kwargs.update(
            proxy=_process_raw_value(step_data["proxy"], context),
            force_import=bool(step_data.get("force_import", True)),
            redeploy_implementation=_parse_enum(
                RedeployPolicy,
                step_data.get("redeploy_implementation", RedeployPolicy.ALWAYS.value),
                step_name,
                "redeploy_implementation",
            ),
        )
        if args:
            raise ConfigurationError(f"Upgrade step '{step_name}' does not take 'args'.")

    return Step(**kwargs)


class DeploymentPlan:
    """
    An ordered sequence of steps; position is the dependency order.

    A step may only reference addresses produced by strictly earlier steps,
    which is checked while the plan is loaded.
    """

    def __init__(
        self,
        name: str,
        steps: List[Step],
        constants: Optional[Dict[str, Any]] = None,
        chain_id: Optional[int] = None,
        path: Optional[Path] = None,
    ):
        self.name = name
        self.steps = list(steps)
        self.constants = constants or dict()
        self.chain_id = chain_id
        self.path = path

    def __iter__(self) -> Iterator[Step]:
        return iter(self.steps)

    def __len__(self) -> int:
        return len(self.steps)

    def get(self, step_name: str) -> Step:
        for step in self.steps:
            if step.name == step_name:
                return step
        raise KeyError(step_name)

    @classmethod
    def from_config(
        cls,
        config: typing.Dict,
        environ: Optional[typing.Mapping[str, str]] = None,
        path: Optional[Path] = None,
    ) -> "DeploymentPlan":
        print("Processing deployment plan...")
        environ = os.environ if environ is None else environ

        deployment = config.get(PLAN_DEPLOYMENT_KEY) or dict()
        plan_name = deployment.get("name")
        if not plan_name:
            raise ConfigurationError("deployment name is not set in plan file.")
        chain_id = deployment.get("chain_id")

        raw_steps = config.get(PLAN_STEPS_KEY)
        if not raw_steps:
            raise ConfigurationError(f"Plan file for {plan_name} is missing 'steps'.")

        constants = process_constants(config.get(PLAN_CONSTANTS_KEY), environ)

        steps = list()
        earlier_steps = OrderedDict()
        for step_info in raw_steps:
            context = VariableContext(
                step_name=str(step_info), earlier_steps=earlier_steps, constants=constants
            )
            step = _parse_step(step_info, context)
            if any(existing.name == step.name for existing in steps):
                raise ConfigurationError(f"Duplicate step name '{step.name}'.")
            steps.append(step)
            if step.produces_address:
                earlier_steps[step.name] = step.address_contract

        return cls(
            name=plan_name,
            steps=steps,
            constants=constants,
            chain_id=int(chain_id) if chain_id is not None else None,
            path=path,
        )

    @classmethod
    def from_yaml(
        cls, filepath: Path, environ: Optional[typing.Mapping[str, str]] = None
    ) -> "DeploymentPlan":
        config = _load_yaml(filepath)
        return cls.from_config(config=config, environ=environ, path=filepath)
