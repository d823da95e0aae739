from typing import List, Optional, Dict, Any, Literal
from pydantic import BaseModel, Field, field_validator


class MessagePart(BaseModel):
    type: str
    text: Optional[str] = None


class ChatMessage(BaseModel):
    role: Literal["user", "assistant", "system"]
    content: Optional[str] = None
    parts: Optional[List[MessagePart]] = None
    id: Optional[str] = None
    createdAt: Optional[str] = None


class ChatRequest(BaseModel):
    messages: List[ChatMessage] = Field(min_length=1)
    storeId: Optional[str] = None
    sessionId: Optional[str] = Field(default=None, max_length=128)
    noStream: Optional[bool] = None  # WebViews/in-app browsers that can't stream


class MatchedDocument(BaseModel):
    id: str
    content: str
    metadata: Dict[str, Any]
    similarity: float


class IngestRequest(BaseModel):
    url: str
    storeId: str = Field(min_length=1)


class IngestResponse(BaseModel):
    success: bool
    message: str
    pagesCount: int
    chunksCount: int


class DiscoverRequest(BaseModel):
    baseUrl: str


class DiscoverResponse(BaseModel):
    success: bool
    totalCount: int
    urls: List[str]


class ExecuteRequest(BaseModel):
    urls: List[str] = Field(min_length=1)
    storeId: str = Field(min_length=1)


class AddContentRequest(BaseModel):
    text: str = Field(min_length=1)
    url: Optional[str] = None
    title: Optional[str] = None


class EditContentRequest(BaseModel):
    source: str = Field(min_length=1)
    text: str = Field(min_length=1)
    title: Optional[str] = None


class PromptUpdate(BaseModel):
    systemPrompt: str


class WidgetConfigUpdate(BaseModel):
    config: Dict[str, Any]


class CreditStatusOut(BaseModel):
    creditLimit: int
    creditsUsed: int
    creditsRemaining: int
    percentUsed: float
    billingCycleStart: str
    billingCycleEnd: str


class TenantCreate(BaseModel):
    id: str
    name: str
    allowed_domains: List[str] = []
    language: str = "no"
    persona: str = ""
    contact_email: Optional[str] = None
    credit_limit: Optional[int] = Field(default=None, ge=0)


class TenantUpdate(BaseModel):
    name: Optional[str] = None
    allowed_domains: Optional[List[str]] = None
    language: Optional[str] = None
    persona: Optional[str] = None
    contact_email: Optional[str] = None
    credit_limit: Optional[int] = Field(default=None, ge=0)
    features: Optional[Dict[str, bool]] = None

    # Omitted means unchanged; only contact_email may be cleared with null
    @field_validator("name", "allowed_domains", "language", "persona", "credit_limit", "features")
    @classmethod
    def _not_null(cls, value):
        if value is None:
            raise ValueError("may be omitted but not null")
        return value


class AccessGrant(BaseModel):
    userId: str = Field(min_length=1, max_length=64)
    email: str = ""
    tenantId: str = Field(min_length=1)
    role: Literal["admin", "viewer"] = "admin"


class AccessRevoke(BaseModel):
    tenantId: str = Field(min_length=1)
