"""
Resolution of configured account selectors into device-derived accounts.

Selectors are evaluated in order; the first matching rule wins:

1. an int is an account index
2. a string holding only an integer is an account index
3. a derivation path string contributes its trailing index
4. anything else is skipped

No selector at all means account index 0. Duplicates are kept.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Callable, Iterable, Optional, Union

from ledger_provider.core.config import default_derivation_path
from ledger_provider.core.ledger_signer import LedgerSigner

logger = logging.getLogger(__name__)

DERIVATION_PATH_PATTERN = re.compile(r"^(?:m/)?(?:\d+'?/)+(\d+)'?$")
INTEGER_PATTERN = re.compile(r"^\+?\d+$")

DerivationFunction = Callable[[int], str]


@dataclass(frozen=True)
class Account:
    address: str
    derivation_path: str
    public_key: str

    def to_dict(self) -> dict[str, str]:
        return {
            "address": self.address,
            "derivationPath": self.derivation_path,
            "publicKey": self.public_key,
        }


def parse_account_selector(selector: Union[int, str]) -> Optional[int]:
    """Index named by one selector, or None when the selector is not understood."""
    if isinstance(selector, bool):
        return None
    if isinstance(selector, int):
        return selector if selector >= 0 else None
    if not isinstance(selector, str):
        return None
    text = selector.strip()
    if INTEGER_PATTERN.match(text):
        return int(text)
    match = DERIVATION_PATH_PATTERN.match(text)
    if match:
        return int(match.group(1))
    return None


def parse_account_config(selectors: Iterable[Union[int, str]]) -> list[int]:
    indices = []
    for selector in selectors or ():
        index = parse_account_selector(selector)
        if index is None:
            logger.warning(
                "Skipping unrecognised Ledger account selector %r",
                selector,
                extra={"event": "ledger.accounts.skip_selector"},
            )
            continue
        indices.append(index)
    return indices or [0]


class AccountRegistry:
    """Derives and caches the accounts of one session."""

    def __init__(self, signer: LedgerSigner):
        self.signer = signer
        self._accounts: list[Account] = []

    @property
    def accounts(self) -> list[Account]:
        return list(self._accounts)

    @property
    def addresses(self) -> list[str]:
        return [account.address for account in self._accounts]

    async def resolve(
        self,
        account_config: Iterable[Union[int, str]],
        derivation_fn: Optional[DerivationFunction] = None,
    ) -> list[Account]:
        """Derive one Account per resolved index, preserving selector order."""
        derivation_fn = derivation_fn or default_derivation_path
        accounts = []
        for index in parse_account_config(account_config):
            derivation_path = derivation_fn(index)
            derived = await self.signer.get_address(derivation_path)
            accounts.append(
                Account(
                    address=derived.address,
                    derivation_path=derivation_path,
                    public_key=derived.public_key,
                )
            )
        self._accounts = accounts
        logger.info(
            "Derived Ledger accounts",
            extra={"event": "ledger.accounts.derived", "count": len(accounts)},
        )
        return self.accounts

    def find(self, address: Optional[str]) -> Optional[Account]:
        """Case-insensitive lookup of a managed account."""
        if not isinstance(address, str):
            return None
        wanted = address.lower()
        for account in self._accounts:
            if account.address.lower() == wanted:
                return account
        return None

    def clear(self) -> None:
        self._accounts = []
