"""
Snapshots handed out of a transaction boundary.

ORM entities never leave the boundary that loaded them. Operations return
a UserView taken while the session is still open; associations that were
not loaded by then are recorded as DETACHED instead of being fetched later.
"""

from dataclasses import dataclass
from typing import Tuple, Union

from sqlalchemy import inspect

from .database import User
from .errors import StaleAccess


class Detached:
    """Marker for an association that was never loaded inside its boundary."""

    def __repr__(self) -> str:
        return "DETACHED"


DETACHED = Detached()


@dataclass(frozen=True)
class UserView:
    id: int
    name: str
    age: int
    version: int
    loaded_addresses: Union[Tuple[str, ...], Detached] = DETACHED

    @property
    def addresses(self) -> Tuple[str, ...]:
        """Cities of the user's addresses; raises StaleAccess when never loaded."""
        if isinstance(self.loaded_addresses, Detached):
            raise StaleAccess(
                f"addresses of user {self.id} were not loaded before the transaction closed"
            )
        return self.loaded_addresses

    @property
    def addresses_loaded(self) -> bool:
        return not isinstance(self.loaded_addresses, Detached)

    @classmethod
    def from_entity(cls, user: User) -> "UserView":
        """Snapshot `user`; must be called while its session is open."""
        if "addresses" in inspect(user).unloaded:
            addresses = DETACHED
        else:
            addresses = tuple(address.city for address in user.addresses)
        return cls(
            id=user.id,
            name=user.name,
            age=user.age,
            version=user.version,
            loaded_addresses=addresses,
        )
