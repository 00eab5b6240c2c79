#!/usr/bin/python3

from kigu_deployment.constants import PLANS_DIR
from kigu_deployment.orchestrator import run_plan

VERIFY = True
PLAN_FILEPATH = PLANS_DIR / "sclock-upgrade.yml"


def main():
    """
    This script upgrades the SCLock proxy at SCLOCK_PROXY_ADDRESS.

    The proxy is force-imported first, so the upgrade also works from a machine
    that did not deploy it; a fresh implementation is deployed on every run.
    """
    run_plan(PLAN_FILEPATH, verify=VERIFY)
