import time
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Sequence

from ape.api import AccountAPI, ReceiptAPI, TransactionAPI
from ape.contracts.base import ContractContainer, ContractInstance, ContractTransactionHandler
from ape.exceptions import ConversionError
from ape.exceptions import ProviderError as ApeProviderError
from ape.exceptions import TransactionNotFoundError, VirtualMachineError
from eth_typing import ChecksumAddress
from eth_utils import is_address, to_checksum_address, to_hex
from ethpm_types import MethodABI
from hexbytes import HexBytes
from web3.auto import w3
from web3.exceptions import TransactionNotFound

from kigu_deployment.constants import PROXY_CONFIRMATION_TIMEOUT, PROXY_POLLING_INTERVAL
from kigu_deployment.exceptions import (
    ConfigurationError,
    ProviderError,
    RevertError,
    TransactionTimeoutError,
)
from kigu_deployment.fees import FeeOracle


class ConfirmationWindow(NamedTuple):
    """Bounded wait for a mined receipt."""

    timeout: float = PROXY_CONFIRMATION_TIMEOUT
    polling_interval: float = PROXY_POLLING_INTERVAL


class SubmissionResult(NamedTuple):
    receipt: ReceiptAPI
    address: Optional[ChecksumAddress] = None
    instance: Optional[ContractInstance] = None


def _validate_method_args(
    method_abis: List[MethodABI], args: Sequence[Any]
) -> Dict[str, Any]:
    """Validates the transaction arguments against the function ABI."""
    if len(method_abis) == 0:
        raise ConfigurationError("No method abis provided for validation of args")

    abis_matching_args_length = [abi for abi in method_abis if len(abi.inputs) == len(args)]
    for abi in abis_matching_args_length:
        named_args = {}
        for arg, abi_input in zip(args, abi.inputs):
            if not w3.is_encodable(abi_input.type, arg):
                break
            named_args[abi_input.name] = arg
        else:
            return named_args
    raise ConfigurationError(
        f"Could not find ABI for '{method_abis[0].name}' with {len(args)} arg(s) and given type(s)"
    )


def is_read_only(method) -> bool:
    return not any(abi.is_stateful for abi in method.abis)


class TransactionSubmitter:
    """
    Represents an ape account plus validated/annotated transaction execution.

    Every submission fetches fresh fee data and returns only once the
    transaction is mined; ape errors are translated into deployment errors.

    Without a confirmation window ape waits for the receipt itself, bounded by
    the network's transaction_acceptance_timeout. With a window the signed
    transaction is broadcast without waiting and its receipt is polled until
    the window closes.
    """

    def __init__(
        self,
        account: AccountAPI,
        fee_oracle: FeeOracle,
        chain,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._account = account
        self._fee_oracle = fee_oracle
        self._chain = chain
        self._sleep = sleep
        self._clock = clock

    @property
    def account(self) -> AccountAPI:
        return self._account

    @property
    def address(self) -> ChecksumAddress:
        return to_checksum_address(self._account.address)

    @property
    def _provider(self):
        return self._chain.provider

    def deploy(
        self,
        container: ContractContainer,
        *args,
        window: Optional[ConfirmationWindow] = None,
    ) -> SubmissionResult:
        """Deploys a contract and waits for the deployment to be mined."""
        fee_data = self._fee_oracle.fetch_fee_data()
        print(
            f"\nDeploying {container.contract_type.name} "
            f"(max fee {fee_data.max_fee_per_gas} wei, "
            f"priority fee {fee_data.max_priority_fee_per_gas} wei)"
        )
        if window is None:
            instance = self._send(
                self._account.deploy, container, *args, **fee_data.as_transaction_kwargs()
            )
            receipt = instance.receipt
        else:
            txn = self._send(
                container.constructor.serialize_transaction,
                *args,
                sender=self._account.address,
                **fee_data.as_transaction_kwargs(),
            )
            receipt = self._broadcast(txn, window)
            instance = self._send(container.at, receipt.contract_address)

        return SubmissionResult(
            receipt=receipt, address=to_checksum_address(instance.address), instance=instance
        )

    def transact(
        self,
        method: ContractTransactionHandler,
        *args,
        window: Optional[ConfirmationWindow] = None,
    ) -> SubmissionResult:
        """Invokes a state-mutating contract method and waits for it to be mined."""
        named_args = _validate_method_args(method_abis=method.abis, args=args)
        base_message = (
            f"\nTransacting {method.contract.contract_type.name}"
            f"[{method.contract.address[:10]}].{method.abis[0].name}"
        )
        if named_args:
            pretty_args = "\n\t".join(f"{k}={v}" for k, v in named_args.items())
            message = f"{base_message} with arguments:\n\t{pretty_args}"
        else:
            message = f"{base_message} with no arguments"
        print(message)

        fee_data = self._fee_oracle.fetch_fee_data()
        if window is None:
            receipt = self._send(
                method, *args, sender=self._account, **fee_data.as_transaction_kwargs()
            )
        else:
            txn = self._send(
                method.as_transaction,
                *args,
                sender=self._account.address,
                **fee_data.as_transaction_kwargs(),
            )
            receipt = self._broadcast(txn, window)
        if receipt.failed:
            raise RevertError(f"Transaction {receipt.txn_hash} reverted.")
        return SubmissionResult(receipt=receipt)

    def call(self, method, *args) -> Any:
        """
        Reads a method's return value without sending a transaction.

        View methods are called directly; state-mutating methods are simulated
        against the latest block from the deployer's account.
        """
        _validate_method_args(method_abis=method.abis, args=args)
        print(
            f"\nCalling {method.contract.contract_type.name}"
            f"[{method.contract.address[:10]}].{method.abis[0].name}"
        )
        if is_read_only(method):
            return self._send(method, *args)
        return self._send(method.call, *args, sender=self._account.address)

    def call_for_address(self, method, *args) -> ChecksumAddress:
        value = self.call(method, *args)
        if not isinstance(value, str) or not is_address(value):
            raise ConfigurationError(
                f"{method.abis[0].name} returned {value!r}, which is not an address."
            )
        return to_checksum_address(value)

    @staticmethod
    def _send(action: Callable, *args, **kwargs) -> Any:
        try:
            return action(*args, **kwargs)
        except VirtualMachineError as error:
            raise RevertError(str(error)) from error
        except (TransactionNotFoundError, TimeoutError) as error:
            raise TransactionTimeoutError(str(error)) from error
        except (ApeProviderError, OSError) as error:
            raise ProviderError(str(error)) from error
        except ConversionError as error:
            raise ConfigurationError(str(error)) from error

    def _broadcast(self, txn: TransactionAPI, window: ConfirmationWindow) -> ReceiptAPI:
        txn = self._send(self._account.prepare_transaction, txn)
        signed_txn = self._send(self._account.sign_transaction, txn)
        if signed_txn is None:
            raise ConfigurationError("The deployer account declined to sign the transaction.")
        txn_hash = self._send(
            self._provider.web3.eth.send_raw_transaction, signed_txn.serialize_transaction()
        )
        return self._await_confirmation(to_hex(HexBytes(txn_hash)), window)

    def _fetch_receipt(self, txn_hash: str) -> Optional[ReceiptAPI]:
        try:
            self._send(self._provider.web3.eth.get_transaction_receipt, txn_hash)
        except TransactionNotFound:
            return None
        return self._send(self._provider.get_receipt, txn_hash)

    def _await_confirmation(self, txn_hash: str, window: ConfirmationWindow) -> ReceiptAPI:
        deadline = self._clock() + window.timeout
        while True:
            receipt = self._fetch_receipt(txn_hash)
            if receipt is not None and receipt.block_number is not None:
                return receipt
            if self._clock() >= deadline:
                raise TransactionTimeoutError(
                    f"Transaction {txn_hash} was not confirmed "
                    f"within {window.timeout} seconds."
                )
            self._sleep(window.polling_interval)
