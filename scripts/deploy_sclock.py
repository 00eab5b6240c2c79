#!/usr/bin/python3

from kigu_deployment.constants import PLANS_DIR
from kigu_deployment.orchestrator import run_plan

VERIFY = True
PLAN_FILEPATH = PLANS_DIR / "sclock.yml"


def main():
    """
    This script deploys SCLock (without proxy) for the token at KIGU_ADDRESS.
    """
    run_plan(PLAN_FILEPATH, verify=VERIFY)
