from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Literal, TypeVar
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from synergy_api.crm.errors import ValidationError


EntityStatus = Literal["active", "archived"]
EmailType = Literal["work", "personal", "previous_work", "other"]
SynergyStatus = Literal["Active", "Inactive", "Pending", "On Hold", "Completed", "archived"]


ModelT = TypeVar("ModelT", bound=BaseModel)


def _strip_required(value: str) -> str:
    stripped = value.strip()
    if not stripped:
        raise ValueError("must not be blank")
    return stripped


class ContactEmailCreate(BaseModel):
    email_address: str = Field(min_length=3)
    type: EmailType = "work"
    is_primary: bool = False

    @field_validator("email_address")
    @classmethod
    def validate_email_address(cls, value: str) -> str:
        value = value.strip().lower()
        if "@" not in value or value.startswith("@") or value.endswith("@"):
            raise ValueError("must be an email address")
        return value


class ContactEmailRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    contact_id: UUID
    email_address: str
    type: EmailType
    is_primary: bool
    is_archived: bool
    created_at: datetime
    updated_at: datetime


class ContactCreate(BaseModel):
    first_name: str = Field(min_length=1, max_length=50)
    middle_name: str | None = Field(default=None, max_length=50)
    last_name: str = Field(min_length=1, max_length=50)
    mobile_phone: str | None = None
    office_phone: str | None = None
    private_phone: str | None = None
    linkedin: str | None = None
    tags: list[str] = Field(default_factory=list)
    notes: str | None = None
    custom_fields: dict[str, Any] = Field(default_factory=dict)
    emails: list[ContactEmailCreate] = Field(default_factory=list)

    @field_validator("first_name", "last_name")
    @classmethod
    def strip_names(cls, value: str) -> str:
        return _strip_required(value)


class ContactUpdate(BaseModel):
    first_name: str | None = Field(default=None, min_length=1, max_length=50)
    middle_name: str | None = Field(default=None, max_length=50)
    last_name: str | None = Field(default=None, min_length=1, max_length=50)
    mobile_phone: str | None = None
    office_phone: str | None = None
    private_phone: str | None = None
    linkedin: str | None = None
    tags: list[str] | None = None
    notes: str | None = None
    custom_fields: dict[str, Any] | None = None
    last_contacted_at: datetime | None = None
    next_follow_up_at: datetime | None = None


class ContactRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    first_name: str
    middle_name: str | None
    last_name: str
    status: EntityStatus
    mobile_phone: str | None
    office_phone: str | None
    private_phone: str | None
    linkedin: str | None
    tags: list[str]
    notes: str | None
    custom_fields: dict[str, Any]
    last_contacted_at: datetime | None
    next_follow_up_at: datetime | None
    emails: list[ContactEmailRead] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime


class CompanyCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    email: str | None = Field(default=None, max_length=100)
    phone: str | None = Field(default=None, max_length=20)
    website: str | None = Field(default=None, max_length=255)
    industry: str | None = Field(default=None, max_length=100)
    full_address: str | None = None
    country: str | None = Field(default=None, max_length=50)
    city: str | None = Field(default=None, max_length=100)
    tags: list[str] = Field(default_factory=list)
    notes: str | None = None
    custom_fields: dict[str, Any] = Field(default_factory=dict)
    parent_company_id: UUID | None = None

    @field_validator("name")
    @classmethod
    def strip_name(cls, value: str) -> str:
        return _strip_required(value)


class CompanyUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=100)
    email: str | None = Field(default=None, max_length=100)
    phone: str | None = Field(default=None, max_length=20)
    website: str | None = Field(default=None, max_length=255)
    industry: str | None = Field(default=None, max_length=100)
    full_address: str | None = None
    country: str | None = Field(default=None, max_length=50)
    city: str | None = Field(default=None, max_length=100)
    tags: list[str] | None = None
    notes: str | None = None
    custom_fields: dict[str, Any] | None = None
    parent_company_id: UUID | None = None


class CompanyRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    status: EntityStatus
    email: str | None
    phone: str | None
    website: str | None
    industry: str | None
    full_address: str | None
    country: str | None
    city: str | None
    tags: list[str]
    notes: str | None
    custom_fields: dict[str, Any]
    parent_company_id: UUID | None
    created_at: datetime
    updated_at: datetime


class BranchCreate(BaseModel):
    company_id: UUID
    name: str = Field(min_length=1, max_length=100)
    type: str | None = Field(default=None, max_length=50)
    address: str | None = None
    city: str | None = Field(default=None, max_length=100)
    region: str | None = Field(default=None, max_length=100)
    postal_code: str | None = Field(default=None, max_length=20)
    country: str | None = Field(default=None, max_length=50)
    phone: str | None = Field(default=None, max_length=50)
    email: str | None = Field(default=None, max_length=255)
    is_headquarters: bool = False


class BranchUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=100)
    type: str | None = Field(default=None, max_length=50)
    address: str | None = None
    city: str | None = Field(default=None, max_length=100)
    region: str | None = Field(default=None, max_length=100)
    postal_code: str | None = Field(default=None, max_length=20)
    country: str | None = Field(default=None, max_length=50)
    phone: str | None = Field(default=None, max_length=50)
    email: str | None = Field(default=None, max_length=255)
    is_headquarters: bool | None = None


class BranchRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    company_id: UUID
    name: str
    type: str | None
    address: str | None
    city: str | None
    region: str | None
    postal_code: str | None
    country: str | None
    phone: str | None
    email: str | None
    is_headquarters: bool
    created_at: datetime
    updated_at: datetime


class PipelineStageCreate(BaseModel):
    name: str = Field(min_length=1, max_length=50)
    position: int = Field(ge=0)


class PipelineStageUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=50)
    position: int | None = Field(default=None, ge=0)


class PipelineStageRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    position: int
    created_at: datetime
    updated_at: datetime


class DealCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    value: Decimal | None = Field(default=None, ge=Decimal("0"))
    stage_id: UUID | None = None
    contact_id: UUID | None = None
    company_id: UUID | None = None
    branch_id: UUID | None = None
    expected_close_date: date | None = None
    notes: str | None = None
    tags: list[str] = Field(default_factory=list)

    @field_validator("name")
    @classmethod
    def strip_name(cls, value: str) -> str:
        return _strip_required(value)


class DealUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=100)
    value: Decimal | None = Field(default=None, ge=Decimal("0"))
    stage_id: UUID | None = None
    contact_id: UUID | None = None
    company_id: UUID | None = None
    branch_id: UUID | None = None
    expected_close_date: date | None = None
    notes: str | None = None
    tags: list[str] | None = None


class DealStageChangeRequest(BaseModel):
    stage_id: UUID


class DealRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    status: EntityStatus
    value: Decimal | None
    stage_id: UUID | None
    contact_id: UUID | None
    company_id: UUID | None
    branch_id: UUID | None
    expected_close_date: date | None
    notes: str | None
    tags: list[str]
    created_at: datetime
    updated_at: datetime


class LinkContactRequest(BaseModel):
    company_id: UUID | None = None
    company_name: str | None = Field(default=None, max_length=100)
    role: str | None = Field(default=None, max_length=100)
    job_description: str | None = None
    is_primary: bool = False
    branch_id: UUID | None = None


class AreaOfActivityCreate(LinkContactRequest):
    contact_id: UUID


class AreaOfActivityUpdate(BaseModel):
    company_id: UUID | None = None
    company_name: str | None = Field(default=None, max_length=100)
    role: str | None = Field(default=None, max_length=100)
    job_description: str | None = None
    is_primary: bool | None = None
    branch_id: UUID | None = None


class AreaOfActivityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    contact_id: UUID
    company_id: UUID | None
    company_name: str | None
    branch_id: UUID | None
    role: str | None
    job_description: str | None
    is_primary: bool
    created_at: datetime
    updated_at: datetime


class SynergyCreate(BaseModel):
    contact_id: UUID
    company_id: UUID
    deal_id: UUID
    type: str | None = Field(default=None, min_length=1, max_length=50)
    description: str | None = None
    start_date: date | None = None


class SynergyUpdate(BaseModel):
    # Identity fields are declared so that attempts to change them can be rejected explicitly.
    contact_id: UUID | None = None
    company_id: UUID | None = None
    deal_id: UUID | None = None
    status: SynergyStatus | None = None
    description: str | None = None
    end_date: date | None = None


class SynergyRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    contact_id: UUID
    company_id: UUID
    deal_id: UUID
    type: str
    status: SynergyStatus
    description: str | None
    start_date: date
    end_date: date | None
    created_at: datetime
    updated_at: datetime


class OrphanLinkRead(BaseModel):
    area_id: UUID
    contact_id: UUID
    company_id: UUID


class StaleSynergyRead(BaseModel):
    synergy_id: UUID
    deal_id: UUID
    contact_id: UUID
    company_id: UUID
    reason: Literal["deal_missing", "deal_archived", "association_mismatch"]


def validate_payload(schema: type[ModelT], payload: BaseModel | dict[str, Any]) -> ModelT:
    """Validate a loosely typed payload once, reporting every offending field."""
    if isinstance(payload, schema):
        return payload
    raw = payload.model_dump(exclude_unset=True) if isinstance(payload, BaseModel) else payload
    try:
        return schema.model_validate(raw)
    except PydanticValidationError as exc:
        fields = [".".join(str(part) for part in error["loc"]) for error in exc.errors()]
        raise ValidationError(f"Invalid {schema.__name__} payload", fields=fields) from exc
