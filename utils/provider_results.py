"""Tagged results returned at third-party API boundaries"""

from dataclasses import dataclass
from typing import Any, Generic, Optional, TypeVar, Union

T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    data: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class ProviderError:
    """Non-success response from a provider; status is None for transport failures"""
    status: Optional[int]
    message: str
    body: Any = None

    @property
    def ok(self) -> bool:
        return False


ProviderResult = Union[Ok[T], ProviderError]
