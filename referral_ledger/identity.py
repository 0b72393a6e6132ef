from typing import Protocol


class IdentityProvider(Protocol):
    async def current_account_id(self) -> str:
        ...


class StaticIdentityProvider:
    """Identity for a single device or process, fixed at construction."""

    def __init__(self, account_id: str):
        if not account_id:
            raise ValueError("account_id must not be empty")
        self.account_id = account_id

    async def current_account_id(self) -> str:
        return self.account_id
