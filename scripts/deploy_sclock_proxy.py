#!/usr/bin/python3

from kigu_deployment.constants import PLANS_DIR
from kigu_deployment.orchestrator import run_plan

VERIFY = True
PLAN_FILEPATH = PLANS_DIR / "sclock-proxy.yml"


def main():
    """
    This script deploys SCLock behind a transparent proxy, initialized
    with the token at KIGU_ADDRESS. Upgrade it later with upgrade_sclock.py.
    """
    run_plan(PLAN_FILEPATH, verify=VERIFY)
