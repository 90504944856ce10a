from datetime import datetime
from enum import Enum
from typing import Annotated, Optional, List

from pydantic import BaseModel, BeforeValidator, ConfigDict


class LinkPrecedence(str, Enum):
    PRIMARY = "primary"
    SECONDARY = "secondary"


def _blank_to_none(value):
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return str(value)
    if isinstance(value, str) and not value.strip():
        return None
    return value


# Clients commonly send phone numbers as JSON numbers and "" for a missing field.
ContactField = Annotated[Optional[str], BeforeValidator(_blank_to_none)]


class Contact(BaseModel):
    """One row of the Contact table, validated as it leaves the store."""

    model_config = ConfigDict(frozen=True)

    id: int
    email: Optional[str] = None
    phoneNumber: Optional[str] = None
    linkedId: Optional[int] = None
    linkPrecedence: LinkPrecedence
    createdAt: datetime
    updatedAt: datetime
    deletedAt: Optional[datetime] = None

    @property
    def group_id(self) -> int:
        """Id of the primary this record belongs to."""
        if self.linkPrecedence == LinkPrecedence.PRIMARY:
            return self.id
        return self.linkedId if self.linkedId is not None else self.id

    @property
    def age_key(self):
        return (self.createdAt, self.id)


class Observation(BaseModel):
    model_config = ConfigDict(frozen=True)

    email: ContactField = None
    phoneNumber: ContactField = None

    def matches(self, contact: Contact) -> bool:
        return contact.email == self.email and contact.phoneNumber == self.phoneNumber


class IdentifyRequest(BaseModel):
    email: ContactField = None
    phoneNumber: ContactField = None


class ContactResponse(BaseModel):
    primaryContactId: int
    emails: List[str]
    phoneNumbers: List[str]
    secondaryContactIds: List[int]


class FinalResponse(BaseModel):
    contact: ContactResponse


class AddContactRequest(BaseModel):
    id: Optional[int] = None
    email: ContactField = None
    phoneNumber: ContactField = None
    linkedId: Optional[int] = None
    linkPrecedence: LinkPrecedence = LinkPrecedence.PRIMARY
