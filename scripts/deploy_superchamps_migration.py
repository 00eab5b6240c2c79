#!/usr/bin/python3

from kigu_deployment.constants import PLANS_DIR
from kigu_deployment.orchestrator import run_plan

VERIFY = True
PLAN_FILEPATH = PLANS_DIR / "superchamps-migration.yml"


def main():
    """
    This script runs the SuperChamps deployment through SCDeploymentHelper.

    The helper creates the token and the permissions manager; their addresses,
    and the address of the emission escrow, are read from the helper's return
    values. Required environment: SYS_ADMIN_ADDRESS, EMISSION_TREASURY_ADDRESS,
    SEASON_TREASURY_ADDRESS and EMISSION_START_TIMESTAMP.
    """
    run_plan(PLAN_FILEPATH, verify=VERIFY)
