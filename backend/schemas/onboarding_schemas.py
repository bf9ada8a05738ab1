from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


PropertyType = Literal["residential", "commercial", "industrial"]
OwnershipType = Literal["owner", "renter", "manager"]
ServiceInterest = Literal["solar", "bess", "monitoring"]
BillRange = Literal["below_2k", "2k_5k", "5k_10k", "above_10k", ""]
ReferralSource = Literal["google", "facebook", "referral", "advertisement", "other", ""]

PHONE_PATTERN = r"^(\+63|0)?[0-9]{10,11}$"
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"

EDITABLE_OCR_FIELDS = ("extracted_name", "extracted_address", "extracted_id_number")


# =========================
# FORM STATE (DRAFT)
# =========================

class Step1Data(BaseModel):
    first_name: str = ""
    middle_name: str = ""
    last_name: str = ""
    nickname: str = ""
    email: str = ""
    phone: str = ""
    password: str = ""
    confirm_password: str = ""
    captcha_token: str = ""


class Step2Data(BaseModel):
    id_type: str = ""
    id_image: str = ""
    id_file_name: str = ""
    extracted_name: str = ""
    extracted_address: str = ""
    extracted_id_number: str = ""


class Step3Data(BaseModel):
    property_type: PropertyType = "residential"
    property_ownership: OwnershipType = "owner"
    street_address: str = ""
    barangay: str = ""
    city: str = ""
    province: str = ""
    zip_code: str = ""


class Step4Data(BaseModel):
    interested_services: List[ServiceInterest] = Field(default_factory=list)
    monthly_bill_range: BillRange = ""
    referral_source: ReferralSource = ""


class Step5Data(BaseModel):
    accept_terms: bool = False
    accept_privacy: bool = False
    subscribe_newsletter: bool = False


class OnboardingFormData(BaseModel):
    step1: Step1Data = Field(default_factory=Step1Data)
    step2: Step2Data = Field(default_factory=Step2Data)
    step3: Step3Data = Field(default_factory=Step3Data)
    step4: Step4Data = Field(default_factory=Step4Data)
    step5: Step5Data = Field(default_factory=Step5Data)
    current_step: int = Field(1, ge=1, le=5)
    completed_steps: List[int] = Field(default_factory=list)
    # OCR-filled fields the user has typed into; OCR never overwrites these.
    edited_fields: List[str] = Field(default_factory=list)


# =========================
# STEP VALIDATION (SUBMIT)
# =========================

class Step1Schema(BaseModel):
    first_name: str = Field(min_length=1)
    middle_name: str = ""
    last_name: str = Field(min_length=1)
    nickname: str = ""
    email: str = Field(pattern=EMAIL_PATTERN)
    phone: str = Field(min_length=10, pattern=PHONE_PATTERN)
    password: str = Field(min_length=8)
    confirm_password: str
    captcha_token: str = Field(min_length=1)

    @field_validator("password")
    @classmethod
    def password_strength(cls, v: str) -> str:
        if not any(c.isupper() for c in v):
            raise ValueError("Password must contain at least one uppercase letter")
        if not any(c.isdigit() for c in v):
            raise ValueError("Password must contain at least one number")
        return v

    @model_validator(mode="after")
    def passwords_match(self):
        if self.password != self.confirm_password:
            raise ValueError("Passwords do not match")
        return self


class Step2Schema(BaseModel):
    id_type: str = Field(min_length=1)
    id_image: str = Field(min_length=1)
    id_file_name: str = ""
    extracted_name: str = ""
    extracted_address: str = ""
    extracted_id_number: str = ""


class Step3Schema(BaseModel):
    property_type: PropertyType
    property_ownership: OwnershipType
    street_address: str = Field(min_length=5)
    barangay: str = ""
    city: str = Field(min_length=2)
    province: str = Field(min_length=2)
    zip_code: str = ""


class Step4Schema(Step4Data):
    pass


class Step5Schema(BaseModel):
    accept_terms: bool
    accept_privacy: bool
    subscribe_newsletter: bool = False

    @field_validator("accept_terms")
    @classmethod
    def terms_accepted(cls, v: bool) -> bool:
        if not v:
            raise ValueError("You must accept the Terms & Conditions")
        return v

    @field_validator("accept_privacy")
    @classmethod
    def privacy_accepted(cls, v: bool) -> bool:
        if not v:
            raise ValueError("You must accept the Privacy Policy")
        return v


STEP_SCHEMAS = {
    1: ("step1", Step1Schema),
    2: ("step2", Step2Schema),
    3: ("step3", Step3Schema),
    4: ("step4", Step4Schema),
    5: ("step5", Step5Schema),
}


# =========================
# FORM UPDATES
# =========================

class Step1Update(BaseModel):
    kind: Literal["step1"]
    first_name: Optional[str] = None
    middle_name: Optional[str] = None
    last_name: Optional[str] = None
    nickname: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    password: Optional[str] = None
    confirm_password: Optional[str] = None
    captcha_token: Optional[str] = None


class Step2Update(BaseModel):
    kind: Literal["step2"]
    id_type: Optional[str] = None
    id_image: Optional[str] = None
    id_file_name: Optional[str] = None
    extracted_name: Optional[str] = None
    extracted_address: Optional[str] = None
    extracted_id_number: Optional[str] = None


class Step3Update(BaseModel):
    kind: Literal["step3"]
    property_type: Optional[PropertyType] = None
    property_ownership: Optional[OwnershipType] = None
    street_address: Optional[str] = None
    barangay: Optional[str] = None
    city: Optional[str] = None
    province: Optional[str] = None
    zip_code: Optional[str] = None


class Step4Update(BaseModel):
    kind: Literal["step4"]
    interested_services: Optional[List[ServiceInterest]] = None
    monthly_bill_range: Optional[BillRange] = None
    referral_source: Optional[ReferralSource] = None


class Step5Update(BaseModel):
    kind: Literal["step5"]
    accept_terms: Optional[bool] = None
    accept_privacy: Optional[bool] = None
    subscribe_newsletter: Optional[bool] = None


class NavigateUpdate(BaseModel):
    kind: Literal["navigate"]
    current_step: Optional[int] = Field(None, ge=1, le=5)
    complete_step: Optional[int] = Field(None, ge=1, le=5)


FieldUpdate = Annotated[
    Union[Step1Update, Step2Update, Step3Update, Step4Update, Step5Update, NavigateUpdate],
    Field(discriminator="kind"),
]


# =========================
# REQUEST BODIES
# =========================

class OCRRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    image: Optional[str] = None
    use_ai: bool = Field(True, alias="useAI")


class StructuredNameIn(BaseModel):
    first_name: str
    last_name: str
    middle_name: Optional[str] = None
    nickname: Optional[str] = None


class NameValidationRequest(BaseModel):
    user: StructuredNameIn
    extracted_name: str = ""
    similarity_mode: Literal["positional", "token_set"] = "positional"


class IDTypeValidationRequest(BaseModel):
    selected: str
    detected: str = ""


class ClientContextIn(BaseModel):
    user_agent: str = ""
    language: str = ""
    screen_width: int = 0
    screen_height: int = 0
    timezone: str = ""
    canvas_hash: str = ""


class ProgressSaveRequest(BaseModel):
    form_data: Dict[str, Any] = Field(default_factory=dict)
    current_step: int = Field(ge=1, le=5)
    completed_steps: List[int] = Field(default_factory=list)
    validation_results: Dict[str, Any] = Field(default_factory=dict)
    client: Optional[ClientContextIn] = None


class FormUpdateRequest(BaseModel):
    form: OnboardingFormData = Field(default_factory=OnboardingFormData)
    update: FieldUpdate


class IntakeRequest(BaseModel):
    form: OnboardingFormData
    image: str
    max_retries: int = Field(3, ge=0, le=5)
    session_id: Optional[str] = None


class SubmitRequest(BaseModel):
    form: OnboardingFormData
    client_id: Optional[str] = None
    session_id: Optional[str] = None


class AnalyticsEventIn(BaseModel):
    step: int = 0
    action: str
    data: Dict[str, Any] = Field(default_factory=dict)
    user_id: Optional[str] = None
    user_agent: str = "unknown"
    viewport: str = "unknown"
    session_id: Optional[str] = None
