import click
from ape import networks
from ape.cli import ConnectedProviderCommand, network_option

from kigu_deployment.artifacts import ArtifactStore
from kigu_deployment.exceptions import ConfigurationError, ProxyError
from kigu_deployment.options import address_option, artifacts_dir_option, contract_name_option
from kigu_deployment.proxy import ProxyInspector
from kigu_deployment.utils import check_etherscan_plugin
from kigu_deployment.verification import ApeExplorer, VerificationService


@click.command(cls=ConnectedProviderCommand)
@network_option(required=True)
@contract_name_option
@artifacts_dir_option
@address_option
def cli(network, contract_names, artifacts_dir, address):
    """Verify deployed contracts recorded in the generated artifacts."""
    if address and len(contract_names) != 1:
        raise click.BadOptionUsage(
            option_name="--address",
            message=f"--address requires exactly one contract name; got {len(contract_names)}",
        )

    try:
        check_etherscan_plugin()
    except ConfigurationError as error:
        raise click.ClickException(str(error))
    explorer = networks.provider.network.explorer
    if explorer is None:
        raise click.ClickException(
            f"No block explorer configured for {networks.provider.network.name}."
        )

    store = ArtifactStore(directory=artifacts_dir)
    inspector = ProxyInspector(networks.provider)
    verifier = VerificationService(explorer=ApeExplorer(explorer), proxies=inspector)

    results = []
    for contract_name in contract_names:
        try:
            contract_address = address or store.read_record(contract_name).address
        except (FileNotFoundError, ValueError) as error:
            raise click.ClickException(str(error))

        # check whether contract is a proxy
        try:
            inspector.resolve_implementation_address(contract_address)
        except ProxyError:
            result = verifier.verify(contract_name, contract_address)
        else:
            click.echo("Proxy contract detected; verifying implementation contract")
            result = verifier.verify_proxy(contract_name, contract_address)
        results.append(result)

    failed = [result.name for result in results if result.failed]
    if failed:
        raise click.ClickException(f"Verification failed for {', '.join(failed)}")
    click.echo(f"Verified {len(results)} contract(s).")


if __name__ == "__main__":
    cli()
