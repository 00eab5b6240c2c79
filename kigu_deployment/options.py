from pathlib import Path

import click

from kigu_deployment.types import ChecksumAddress

contract_name_option = click.option(
    "--contract-name",
    "-c",
    "contract_names",
    help="Contract to verify",
    type=click.STRING,
    required=True,
    multiple=True,
)

artifacts_dir_option = click.option(
    "--artifacts-dir",
    "-a",
    help="Directory of generated artifacts; defaults to KIGU_ARTIFACTS_DIR or ./generated",
    type=click.Path(file_okay=False, exists=True, path_type=Path),
    required=False,
)

address_option = click.option(
    "--address",
    help="Address to verify instead of the one recorded in the artifact (single contract only)",
    type=ChecksumAddress(),
    required=False,
)
