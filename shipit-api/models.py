from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class PrincipalKind(str, Enum):
    USER = "USER"
    AUTOMATION = "AUTOMATION"


class DeploymentResult(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class VerifiedIdentity(BaseModel):
    model_config = ConfigDict(frozen=True)

    email: str
    displayName: str
    sessionExpiry: datetime


class Principal(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: PrincipalKind
    identity: Optional[VerifiedIdentity] = None

    @property
    def actor_id(self) -> str:
        if self.identity:
            return self.identity.email
        return "automation"


class Link(BaseModel):
    title: str = Field(..., min_length=1, max_length=120)
    url: str = Field(..., min_length=1)


class DeploymentIntent(BaseModel):
    team: str = Field(..., min_length=1, max_length=120)
    service: str = Field(..., min_length=1, max_length=120)
    buildId: str = Field(..., min_length=1, max_length=120)
    timestamp: Optional[datetime] = None
    links: List[Link] = []
    note: Optional[str] = Field(None, max_length=2000)
    result: Optional[DeploymentResult] = None
    jiraComponent: Optional[str] = None
    replaces: Optional[str] = None


class DeploymentRecord(BaseModel):
    id: str
    team: str
    service: str
    buildId: str
    timestamp: str
    links: List[Link] = []
    note: Optional[str] = None
    result: Optional[DeploymentResult] = None
    jiraComponent: Optional[str] = None
    createdBy: str


class DeploymentSearch(BaseModel):
    team: Optional[str] = None
    service: Optional[str] = None
    buildId: Optional[str] = None
    result: Optional[DeploymentResult] = None
    page: int = Field(1, ge=1)


class DeploymentPage(BaseModel):
    items: List[DeploymentRecord]
    total: int
    page: int
    pageSize: int


class NotificationMessage(BaseModel):
    text: str


class TicketReference(BaseModel):
    externalId: str
    browseUrl: str


class ApiKeyRequest(BaseModel):
    description: str = Field(..., min_length=1, max_length=200)
    replaces: Optional[str] = None


class ApiKeyRecord(BaseModel):
    id: str
    description: str
    keyDigest: str
    createdBy: str
    createdAt: str
    active: bool = True
    revokedBy: Optional[str] = None
    revokedAt: Optional[str] = None

    def public(self) -> dict:
        return self.dict(exclude={"keyDigest"})
