import sys
from typing import Any, Sequence

from ape.utils import ZERO_ADDRESS


def _abort() -> None:
    print("Aborting deployment!")
    sys.exit(1)


def _continue() -> None:
    """Asks the user to continue."""
    answer = input("Continue Y/N? ")
    if answer.lower().strip() == "n":
        _abort()


def _confirm_step(step_name: str) -> None:
    """Asks the user to confirm the execution of a single step."""
    answer = input(f"Execute {step_name} Y/N? ")
    if answer.lower().strip() == "n":
        _abort()


def _confirm_zero_address() -> None:
    answer = input("Zero Address detected for step argument; Continue? Y/N? ")
    if answer.lower().strip() == "n":
        _abort()


def _contains_zero_address(value: Any) -> bool:
    if isinstance(value, (list, tuple)):
        return any(_contains_zero_address(v) for v in value)
    return value == ZERO_ADDRESS


def _confirm_resolution(step_name: str, resolved_args: Sequence[Any]) -> None:
    """Asks the user to confirm the resolved arguments of a single step."""
    if len(resolved_args) == 0:
        print(f"\n(i) No arguments for {step_name}")
        _confirm_step(step_name)
        return

    print(f"\nArguments for {step_name}")
    for position, resolved_value in enumerate(resolved_args):
        print(f"\t[{position}]={resolved_value}")
    _confirm_step(step_name)
    if _contains_zero_address(resolved_args):
        _confirm_zero_address()
