"""
Form types - the stage sequence and payload schema each form type routes with.
The engine treats payloads as opaque; they are validated here before a record is created.
"""

from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, List, Optional, Type

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .config import get_stage_sequences
from .errors import WorkflowValidationError


class CocPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    course_name: str
    completion_date: date
    score: float = Field(ge=0, le=100)
    comments: str
    manager_id: Optional[str] = None
    vp_id: Optional[str] = None
    finance_reviewer_id: Optional[str] = None

    @field_validator('course_name', 'comments')
    @classmethod
    def must_not_be_blank(cls, v):
        if not v.strip():
            raise ValueError('cannot be empty')
        return v.strip()


class DescriptionItem(BaseModel):
    model_config = ConfigDict(extra="forbid")

    description: str
    quantityRequested: float = Field(ge=0)
    quantitySupplied: float = Field(ge=0)
    totalBeforeVAT: float = Field(ge=0)
    totalAfterVAT: float = Field(ge=0)

    @field_validator('description')
    @classmethod
    def description_must_not_be_blank(cls, v):
        if not v.strip():
            raise ValueError('Description is required.')
        return v.strip()


class CertificationPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    # General information
    manager: str
    vendorName: str
    contractName: str
    contractPeriod: float = Field(ge=0)
    contractNumber: str
    invoiceNumber: str
    invoicePeriodFrom: date
    invoicePeriodTo: date
    claimAmountNumber: float = Field(ge=0)
    claimAmountText: str
    pages: int = Field(ge=1)
    departmentName: str
    adminSignature: str
    projectManager: str
    vpName: str
    ssvpName: str

    # Detailed breakdown, always four rows on the paper form
    descriptions: List[DescriptionItem]

    # Stored signature file references; uploads are handled elsewhere
    projectManagerSignatureFile: Optional[str] = None
    vpSignatureFile: Optional[str] = None
    ssvpSignatureFile: Optional[str] = None

    @field_validator('manager', 'vendorName', 'contractName', 'contractNumber', 'invoiceNumber',
                     'claimAmountText', 'departmentName', 'adminSignature', 'projectManager',
                     'vpName', 'ssvpName')
    @classmethod
    def must_not_be_blank(cls, v):
        if not v.strip():
            raise ValueError('cannot be empty')
        return v.strip()

    @field_validator('descriptions')
    @classmethod
    def exactly_four_descriptions(cls, v):
        if len(v) != 4:
            raise ValueError('There must be exactly 4 description entries.')
        return v


@dataclass
class FormType:
    name: str
    stages: List[str]
    payload_model: Type[BaseModel]
    title_field: str

    def validate_payload(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Validate and normalize a payload into JSON-safe primitives."""
        if not isinstance(payload, dict):
            raise WorkflowValidationError(
                f"Payload for '{self.name}' must be an object",
                [{"field": "payload", "message": "must be an object"}]
            )
        try:
            model = self.payload_model(**payload)
        except ValidationError as e:
            errors = [
                {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
                for err in e.errors()
            ]
            raise WorkflowValidationError(f"Invalid {self.name} payload", errors)
        return model.model_dump(mode="json")

    def title(self, payload: Dict[str, Any]) -> str:
        return str(payload.get(self.title_field) or self.name)


PAYLOAD_MODELS = {
    "coc": (CocPayload, "course_name"),
    "certification": (CertificationPayload, "contractName"),
}


def build_form_types(stage_sequences: Dict[str, List[str]] = None) -> Dict[str, FormType]:
    """Build the registry of form types from configured stage sequences."""
    sequences = stage_sequences or get_stage_sequences()
    form_types = {}
    for name, (model, title_field) in PAYLOAD_MODELS.items():
        stages = sequences.get(name)
        if not stages:
            raise ValueError(f"No approval stages configured for form type '{name}'")
        if len(set(stages)) != len(stages):
            raise ValueError(f"Duplicate approval stages for form type '{name}': {stages}")
        form_types[name] = FormType(name=name, stages=list(stages), payload_model=model,
                                    title_field=title_field)
    return form_types
