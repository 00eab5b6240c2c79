from typing import Any, Dict, NamedTuple

from ape.api import ProviderAPI
from ape.exceptions import ProviderError as ApeProviderError

from kigu_deployment.exceptions import ProviderError


class FeeData(NamedTuple):
    """EIP-1559 fee parameters (wei) for a single transaction."""

    max_fee_per_gas: int
    max_priority_fee_per_gas: int

    def as_transaction_kwargs(self) -> Dict[str, Any]:
        """Returns the fee parameters as ape transaction keyword arguments."""
        return {
            "max_fee": self.max_fee_per_gas,
            "max_priority_fee": self.max_priority_fee_per_gas,
        }


class FeeOracle:
    """
    Queries the network's current fee suggestion.

    Fee markets move between confirmations, so callers must fetch
    immediately before every transaction and never reuse the result.
    """

    BASE_FEE_MULTIPLIER = 2

    def __init__(self, provider: ProviderAPI):
        self._provider = provider

    def fetch_fee_data(self) -> FeeData:
        try:
            base_fee = int(self._provider.base_fee)
            priority_fee = int(self._provider.priority_fee)
        except (ApeProviderError, OSError) as error:
            raise ProviderError(f"Could not fetch fee data: {error}") from error

        max_fee = self.BASE_FEE_MULTIPLIER * base_fee + priority_fee
        return FeeData(max_fee_per_gas=max_fee, max_priority_fee_per_gas=priority_fee)
