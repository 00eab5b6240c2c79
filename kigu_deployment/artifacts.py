import json
import os
import re
from pathlib import Path
from typing import Callable, Dict, NamedTuple, Optional

from eth_typing import ChecksumAddress
from eth_utils import to_checksum_address
from eth_typing import ABI

from kigu_deployment.constants import DEFAULT_DEPLOYMENT_VERSION, DEPLOYMENT_VERSION_ENVVAR
from kigu_deployment.exceptions import AbiNotFound
from kigu_deployment.utils import get_artifacts_dir, resolve_abi

ContractName = str

ARTIFACT_SUFFIX = ".js"
STANDARD_ABI_JSON_FORMAT = {"indent": 2}

_WORD_BOUNDARY = re.compile(r"([a-z])([A-Z])")


class ContractRecord(NamedTuple):
    """The persisted name/address/ABI/version of a deployed contract."""

    name: ContractName
    version: str
    address: ChecksumAddress
    abi: ABI


def artifact_stem(name: ContractName) -> str:
    """KiguEmission -> kigu-emission"""
    return _WORD_BOUNDARY.sub(r"\1-\2", name).lower()


def export_prefix(name: ContractName) -> str:
    """KiguEmission -> kiguEmission"""
    return name[:1].lower() + name[1:]


def render_record(record: ContractRecord) -> str:
    """Renders a record as a JS module exporting version, address and ABI."""
    prefix = export_prefix(record.name)
    abi = json.dumps(record.abi, **STANDARD_ABI_JSON_FORMAT)
    return (
        f'const {prefix}Version = "{record.version}";\n\n'
        f'const {prefix}Address = "{record.address}";\n\n'
        f"const {prefix}Abi = {abi};\n\n"
        f"module.exports = {{ {prefix}Address, {prefix}Abi, {prefix}Version }};\n"
    )


def parse_record(name: ContractName, text: str) -> ContractRecord:
    """Parses a module produced by `render_record`."""
    prefix = re.escape(export_prefix(name))
    version = re.search(rf'const {prefix}Version = "([^"]*)";', text)
    address = re.search(rf'const {prefix}Address = "(0x[0-9a-fA-F]{{40}})";', text)
    abi = re.search(rf"const {prefix}Abi = (.*?);\s*module\.exports", text, re.DOTALL)
    if not (version and address and abi):
        raise ValueError(f"Malformed artifact for {name}.")
    return ContractRecord(
        name=name,
        version=version.group(1),
        address=to_checksum_address(address.group(1)),
        abi=json.loads(abi.group(1)),
    )


class ArtifactStore:
    """
    Owns the generated artifact files, one per contract name.

    Each successful write replaces the previous file of the same name
    in full; records are never merged.
    """

    def __init__(
        self,
        directory: Optional[Path] = None,
        abi_resolver: Callable[[ContractName], ABI] = resolve_abi,
        environ: Optional[Dict[str, str]] = None,
    ):
        self._environ = os.environ if environ is None else environ
        self.directory = Path(directory) if directory else get_artifacts_dir(self._environ)
        self._abi_resolver = abi_resolver

    @property
    def version(self) -> str:
        return self._environ.get(DEPLOYMENT_VERSION_ENVVAR) or DEFAULT_DEPLOYMENT_VERSION

    def filepath(self, name: ContractName) -> Path:
        return self.directory / f"{artifact_stem(name)}{ARTIFACT_SUFFIX}"

    def write_record(self, name: ContractName, address: ChecksumAddress) -> Path:
        abi = self._abi_resolver(name)
        if not abi:
            raise AbiNotFound(f"Empty ABI for contract '{name}'.")

        record = ContractRecord(
            name=name,
            version=self.version,
            address=to_checksum_address(address),
            abi=abi,
        )

        # Create the directory if it does not exist
        self.directory.mkdir(parents=True, exist_ok=True)

        filepath = self.filepath(name)
        temp_filepath = filepath.with_name(f".{filepath.name}.tmp")
        temp_filepath.write_text(render_record(record))
        temp_filepath.replace(filepath)
        print(f"(i) Artifact for {name} written to {filepath}")
        return filepath

    def read_record(self, name: ContractName) -> ContractRecord:
        filepath = self.filepath(name)
        if not filepath.exists():
            raise FileNotFoundError(f"No artifact found for {name} at {filepath}")
        return parse_record(name, filepath.read_text())
