import json
import os
from pathlib import Path
from typing import Dict, Optional

import yaml
from ape import networks, project
from ape.api.networks import LOCAL_NETWORK_NAME
from ape.contracts import ContractContainer
from eth_typing import ABI

from kigu_deployment.constants import (
    ARTIFACTS_DIR,
    ARTIFACTS_DIR_ENVVAR,
    AUTOSIGN_ENVVAR,
    OZ_DEPENDENCY_NAME,
    OZ_VERSION,
)
from kigu_deployment.exceptions import AbiNotFound, ConfigurationError

TRUTHY_VALUES = ("1", "true", "yes", "y")


def _load_yaml(filepath: Path) -> dict:
    """Loads a YAML file."""
    with open(filepath, "r") as file:
        return yaml.safe_load(file)


def _load_json(filepath: Path) -> dict:
    """Loads a JSON file."""
    with open(filepath, "r") as file:
        return json.load(file)


def env_flag(name: str, environ: Optional[Dict[str, str]] = None) -> bool:
    environ = os.environ if environ is None else environ
    return environ.get(name, "").strip().lower() in TRUTHY_VALUES


def autosign_enabled(environ: Optional[Dict[str, str]] = None) -> bool:
    return env_flag(AUTOSIGN_ENVVAR, environ)


def get_artifacts_dir(environ: Optional[Dict[str, str]] = None) -> Path:
    """Returns the generated artifacts directory, honouring the environment override."""
    environ = os.environ if environ is None else environ
    override = environ.get(ARTIFACTS_DIR_ENVVAR)
    return Path(override) if override else ARTIFACTS_DIR


def is_local_network() -> bool:
    network_name = networks.provider.network.name
    return network_name == LOCAL_NETWORK_NAME or network_name.endswith("-fork")


def validate_chain_id(chain_id: Optional[int]) -> None:
    """Checks that the plan targets the network ape is connected to."""
    if chain_id is None:
        return
    connected_chain_id = networks.provider.network.chain_id
    if int(chain_id) != connected_chain_id and not is_local_network():
        raise ConfigurationError(
            f"chain_id in plan file ({chain_id}) does not match "
            f"chain_id of current network ({connected_chain_id})."
        )


def check_etherscan_plugin() -> None:
    """
    Checks that the ape-etherscan plugin is installed and that
    the appropriate API key environment variable is set.
    """
    if is_local_network():
        # unnecessary for local deployment
        return
    try:
        from ape_etherscan.utils import API_KEY_ENV_KEY_MAP
    except ImportError:
        raise ConfigurationError("Please install the ape-etherscan plugin to verify contracts.")
    ecosystem_name = networks.provider.network.ecosystem.name
    explorer_envvar = API_KEY_ENV_KEY_MAP.get(ecosystem_name)
    if explorer_envvar is None:
        raise ConfigurationError(f"No block explorer API key known for '{ecosystem_name}'.")
    if not os.environ.get(explorer_envvar):
        raise ConfigurationError(f"{explorer_envvar} is not set.")


def _get_dependency_contract_container(contract: str) -> ContractContainer:
    dependency = project.dependencies[OZ_DEPENDENCY_NAME][OZ_VERSION]
    try:
        return getattr(dependency, contract)
    except AttributeError:
        raise AbiNotFound(f"No contract found with name '{contract}'.")


def get_contract_container(contract: str) -> ContractContainer:
    try:
        contract_container = getattr(project, contract)
    except AttributeError:
        # not in root project; check the openzeppelin dependency
        contract_container = _get_dependency_contract_container(contract)

    return contract_container


def resolve_abi(contract: str) -> ABI:
    """Returns the compiled ABI of a contract as plain JSON-serializable entries."""
    contract_container = get_contract_container(contract)
    contract_abi = list()
    for entry in contract_container.contract_type.abi:
        contract_abi.append(entry.model_dump(mode="json", by_alias=True, exclude_none=True))
    return contract_abi

