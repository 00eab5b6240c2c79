#!/usr/bin/python3

from kigu_deployment.constants import PLANS_DIR
from kigu_deployment.orchestrator import run_plan

VERIFY = True
PLAN_FILEPATH = PLANS_DIR / "kigu-token.yml"


def main():
    """
    This script deploys KiguToken, performs the initial mint, deploys the
    proxied KiguEmission, wires KiguMinter into both and hands the emission
    ProxyAdmin over to the multisig.

    ape run deploy_kigu_token --network base:sepolia:node
    """
    run_plan(PLAN_FILEPATH, verify=VERIFY)
