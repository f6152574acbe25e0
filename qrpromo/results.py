from dataclasses import dataclass
from typing import Generic, TypeVar, Union

from qrpromo.errors import QrPromoError

T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err:
    error: QrPromoError

    @property
    def ok(self) -> bool:
        return False


Result = Union[Ok[T], Err]
