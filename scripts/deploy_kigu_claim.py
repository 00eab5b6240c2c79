#!/usr/bin/python3

from kigu_deployment.constants import PLANS_DIR
from kigu_deployment.orchestrator import run_plan

VERIFY = True
PLAN_FILEPATH = PLANS_DIR / "kigu-claim.yml"


def main():
    """
    This script deploys PermissionsManager and SCSeasonRewards for the token at
    KIGU_ADDRESS, paying out of TREASURY_ADDRESS.
    """
    run_plan(PLAN_FILEPATH, verify=VERIFY)
