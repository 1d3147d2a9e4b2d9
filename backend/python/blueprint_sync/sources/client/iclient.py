from abc import ABC, abstractmethod
from typing import Any


class IClient(ABC):
    """Anything that can hand back a ready-to-use client object."""

    @abstractmethod
    def get_client(self) -> Any:
        raise NotImplementedError
