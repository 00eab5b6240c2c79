import os
import typing
from typing import Optional

from ape import accounts
from ape.api import AccountAPI
from ape.cli.choices import select_account
from ape.exceptions import AccountsError

from kigu_deployment.constants import (
    DEPLOYER_ACCOUNT_ENVVAR,
    DEPLOYER_PASSPHRASE_ENVVAR,
    DEPLOYER_PRIVATE_KEY_ENVVAR,
    IMPORTED_DEPLOYER_ALIAS,
)
from kigu_deployment.exceptions import ConfigurationError


def _load_alias(alias: str) -> AccountAPI:
    try:
        return accounts.load(alias)
    except (IndexError, AccountsError):
        raise ConfigurationError(f"No ape account found with alias '{alias}'.")


def _import_private_key(private_key: str, passphrase: str) -> AccountAPI:
    from ape_accounts import import_account_from_private_key

    if IMPORTED_DEPLOYER_ALIAS in accounts.aliases:
        return accounts.load(IMPORTED_DEPLOYER_ALIAS)

    account = import_account_from_private_key(IMPORTED_DEPLOYER_ALIAS, passphrase, private_key)
    print(f"Account imported: {account.address}")
    return account


def get_deployer_account(
    autosign: bool = False, environ: Optional[typing.Mapping[str, str]] = None
) -> AccountAPI:
    """
    Returns the signing account.

    DEPLOYER_ACCOUNT selects an ape account by alias, DEPLOYER_PRIVATE_KEY imports
    one; otherwise the operator picks an account interactively.
    """
    environ = os.environ if environ is None else environ
    alias = environ.get(DEPLOYER_ACCOUNT_ENVVAR)
    private_key = environ.get(DEPLOYER_PRIVATE_KEY_ENVVAR)
    passphrase = environ.get(DEPLOYER_PASSPHRASE_ENVVAR)

    if private_key and not passphrase:
        raise ConfigurationError(
            f"{DEPLOYER_PASSPHRASE_ENVVAR} is required with {DEPLOYER_PRIVATE_KEY_ENVVAR}."
        )

    if alias:
        account = _load_alias(alias)
    elif private_key:
        account = _import_private_key(private_key, passphrase)
    else:
        account = select_account()

    if autosign:
        print("WARNING: Autosign is enabled. Transactions will be signed automatically.")
        if passphrase:
            account.set_autosign(True, passphrase=passphrase)
        else:
            account.set_autosign(True)
    return account
