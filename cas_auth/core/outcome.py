from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from .errors import CASError

AttributeMap = Dict[str, List[str]]


@dataclass(frozen=True)
class ValidationRequest:
    ticket: str
    service_url: str


@dataclass(frozen=True)
class RawAttribute:
    """
    One attribute element of an authenticationSuccess block.
    `is_metadata` marks direct children of authenticationSuccess that sit
    outside the attributes container.
    """
    local_name: str
    prefix: str
    text: str
    is_metadata: bool = False


@dataclass(frozen=True)
class Success:
    username: str
    raw_attributes: AttributeMap = field(default_factory=dict)
    elements: tuple = ()
    # lxml tree of the response, only set for XML validation
    document: Optional[Any] = field(default=None, compare=False, repr=False)
    success_element: Optional[Any] = field(default=None, compare=False, repr=False)


@dataclass(frozen=True)
class Failure:
    code: str
    message: str
    error: Optional[CASError] = field(default=None, compare=False)

    def raise_error(self):
        if self.error is not None:
            raise self.error
        raise CASError(self.message, code=self.code)


ValidationOutcome = Union[Success, Failure]
