from typing import Any, ClassVar, Dict, Optional, Tuple, Type, TypeVar, Union
from pydantic import BaseModel, Field, ValidationError as PydanticValidationError, field_validator, model_validator

from .errors import ValidationError

M = TypeVar("M", bound=BaseModel)

# ids and block numbers are stored as signed 64-bit integers
MAX_BIGINT = 2 ** 63 - 1


def normalize_amount(value: Union[int, str, None], field: str = "amount") -> str:
    """Canonical base-10 string for a uint256 amount (wei)."""
    if value is None:
        return "0"
    if isinstance(value, bool):
        raise ValueError(f"{field} must be a non-negative integer")
    if isinstance(value, int):
        text = str(value)
    else:
        text = str(value).strip()
    if not text.isdigit():
        raise ValueError(f"{field} must be a non-negative integer")
    return str(int(text))


def normalize_address(value: str) -> str:
    return value.strip().lower()


class ProjectUpsert(BaseModel):
    id: int = Field(ge=0, le=MAX_BIGINT)
    owner: str
    name: str
    description: Optional[str] = ""
    funds: Union[int, str, None] = "0"
    milestone_reached: bool = False
    tx_hash: Optional[str] = None
    block_number: Optional[int] = Field(None, ge=0, le=MAX_BIGINT)
    funding_goal: Union[int, str, None] = "0"

    required_fields: ClassVar[Tuple[str, ...]] = ("id", "owner", "name")

    @field_validator("owner")
    @classmethod
    def _owner(cls, v: str) -> str:
        return normalize_address(v)

    @field_validator("funds", "funding_goal")
    @classmethod
    def _amounts(cls, v, info):
        return normalize_amount(v, info.field_name)


class StakeCreate(BaseModel):
    project_id: int = Field(ge=0, le=MAX_BIGINT)
    staker: str
    amount: Union[int, str]
    tx_hash: Optional[str] = None
    block_number: Optional[int] = Field(None, ge=0, le=MAX_BIGINT)

    required_fields: ClassVar[Tuple[str, ...]] = ("project_id", "staker", "amount")

    @field_validator("staker")
    @classmethod
    def _staker(cls, v: str) -> str:
        return normalize_address(v)

    @field_validator("amount")
    @classmethod
    def _amount(cls, v):
        return normalize_amount(v)


class WithdrawalCreate(BaseModel):
    project_id: int = Field(ge=0, le=MAX_BIGINT)
    withdrawer: str
    amount: Union[int, str]
    milestone: bool = False
    tx_hash: Optional[str] = None
    block_number: Optional[int] = Field(None, ge=0, le=MAX_BIGINT)

    required_fields: ClassVar[Tuple[str, ...]] = ("project_id", "withdrawer", "amount")

    @model_validator(mode="before")
    @classmethod
    def _milestone_marked_alias(cls, data):
        # older dashboards post the flag as milestone_marked
        if isinstance(data, dict) and "milestone" not in data and "milestone_marked" in data:
            data = dict(data, milestone=data["milestone_marked"])
        return data

    @field_validator("withdrawer")
    @classmethod
    def _withdrawer(cls, v: str) -> str:
        return normalize_address(v)

    @field_validator("amount")
    @classmethod
    def _amount(cls, v):
        return normalize_amount(v)


def _missing(payload: Dict[str, Any], required: Tuple[str, ...]) -> bool:
    for key in required:
        value = payload.get(key)
        if value is None or (isinstance(value, str) and not value.strip()):
            return True
    return False


def parse_payload(model: Type[M], payload: Optional[Dict[str, Any]]) -> M:
    """
    Validate a raw JSON body into `model`.
    Raises errors.ValidationError (HTTP 400) instead of pydantic's 422 shape.
    """
    payload = payload or {}
    required = model.required_fields
    if _missing(payload, required):
        raise ValidationError(f"Missing required fields: {', '.join(required)}")

    clean = {k: v for k, v in payload.items() if v is not None}
    try:
        return model.model_validate(clean)
    except PydanticValidationError as e:
        first = e.errors()[0]
        loc = ".".join(str(p) for p in first.get("loc", ()))
        msg = first.get("msg", "invalid value").removeprefix("Value error, ")
        raise ValidationError(f"{loc}: {msg}" if loc else msg)
