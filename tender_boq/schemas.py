"""
schemas.py — Pydantic v2 models.

`BOQExtraction` is the contract between the extraction adapter and the
document service. Its JSON schema is also what we show the model in the
prompt and pass as `response_format`, so the shape the model is asked
for and the shape we validate against can never drift apart.

Field names are snake_case in Python and camelCase on the wire
(`itemNumber`, `unitRate`, ...) to stay compatible with records the
dashboard already stores. `populate_by_name` means both spellings are
accepted on input.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class TenderStatus(str, Enum):
    PROCESSING = "processing"
    PENDING_REVIEW = "pending_review"
    COMPLETED = "completed"
    REJECTED = "rejected"


class ReviewAction(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"
    EDITED = "edited"
    ITEMS_UPDATED = "items_updated"


class DocumentFormat(str, Enum):
    PDF = "pdf"
    SPREADSHEET = "spreadsheet"
    DELIMITED_TEXT = "delimited_text"


class _WireModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


# ── Extraction contract ───────────────────────────────────────────────────


class BOQItem(_WireModel):
    """One line of a Bill of Quantities."""
    item_number: str = Field(..., description="Item number or reference code")
    description: str = Field(..., description="Detailed description of the work item")
    quantity: float = Field(..., gt=0, description="Quantity of the item")
    unit: str = Field(..., description="Unit of measurement (e.g. m², m³, kg, nos)")
    unit_rate: Optional[float] = Field(default=None, ge=0, description="Rate per unit")
    amount: Optional[float] = Field(
        default=None, ge=0, description="Total amount (quantity × unit rate)"
    )
    category: Optional[str] = Field(
        default=None, description="Category or trade (e.g. Civil, Electrical, Plumbing)"
    )

    @field_validator("item_number", mode="before")
    @classmethod
    def item_number_as_string(cls, v: Any) -> Any:
        # Models love to answer `1` instead of `"1"`; "1.2.3" style numbers
        # are why this is a string in the first place.
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return str(v)
        return v

    @field_validator("description")
    @classmethod
    def description_must_not_be_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("description cannot be empty or whitespace")
        return v


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class BOQExtraction(_WireModel):
    """The structure the model must return."""
    project_name: Optional[str] = Field(default=None, description="Name of the project if mentioned")
    project_location: Optional[str] = Field(
        default=None, description="Location of the project if mentioned"
    )
    items: List[BOQItem] = Field(
        ..., description="Array of BOQ items extracted from the tender document"
    )
    total_estimated_cost: Optional[float] = Field(
        default=None, gt=0, description="Total estimated cost if calculable"
    )
    currency: str = Field(default="USD", description="Currency of the amounts")
    extraction_date: str = Field(
        default_factory=_now_iso, description="Date of extraction (ISO format)"
    )
    notes: Optional[str] = Field(default=None, description="Any additional notes or observations")


def extraction_json_schema() -> Dict[str, Any]:
    """JSON schema (camelCase) handed to the model."""
    return BOQExtraction.model_json_schema(by_alias=True)


# ── Loader output ─────────────────────────────────────────────────────────


class SheetData(BaseModel):
    """One sheet of a workbook, or the single record set of a CSV file."""
    name: str
    headers: List[str] = Field(default_factory=list)
    records: List[Dict[str, str]] = Field(default_factory=list)

    @property
    def row_count(self) -> int:
        return len(self.records)

    @property
    def column_count(self) -> int:
        return len(self.headers)


class TabularDocument(BaseModel):
    file_name: str
    format: DocumentFormat
    sheets: List[SheetData] = Field(default_factory=list)

    @property
    def record_count(self) -> int:
        return sum(s.row_count for s in self.sheets)


# ── Persisted record views ────────────────────────────────────────────────


class TenderView(_WireModel):
    id: str
    file_name: str
    file_size: int
    mime_type: str
    status: TenderStatus
    extracted_text: Optional[str] = None
    extraction_context: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    items: List[BOQItem] = Field(default_factory=list)


class ReviewLogView(_WireModel):
    id: int
    tender_id: str
    action: ReviewAction
    details: Dict[str, Any] = Field(default_factory=dict)
    ip_address: Optional[str] = None
    user_id: Optional[str] = None
    created_at: datetime

    @field_validator("details", mode="before")
    @classmethod
    def details_default(cls, v: Any) -> Any:
        return {} if v is None else v


class ProcessResult(_WireModel):
    """What the document service hands back after an upload."""
    tender_id: str
    file_name: str
    status: TenderStatus
    boq_extraction: BOQExtraction
    item_count: int
    # Only set when the tender is waiting for review, so the reviewer can
    # compare the items against what the model actually saw.
    extracted_text: Optional[str] = None
