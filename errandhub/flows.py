"""Conversation flow states and per-step input validation.

Each flow has its own state model; the ``flow`` field is the discriminator
used to decode a stored session back into the right one. Steps are collected
in order and every step validator either returns the parsed value or raises
``ValidationError`` so the caller can re-prompt without advancing.
"""

from __future__ import annotations

import re
from typing import Annotated, Literal

from pydantic import BaseModel, Field, TypeAdapter

from errandhub.adapters.geocoding import Geocoder
from errandhub.config import settings
from errandhub.db_models import TaskKind, VehicleType, WorkerRole
from errandhub.errors import ValidationError
from errandhub.geo import Coordinate, Place
from errandhub.retry import call_external

FLOW_TASK_CREATION = "task_creation"
FLOW_REGISTRATION = "registration"
FLOW_RATING = "rating"

_PHONE_RE = re.compile(r"^\+?[0-9]{10,15}$")
_NATIONAL_ID_RE = re.compile(r"^\d{11}$")

MAX_INSTRUCTIONS_LENGTH = 1000
MAX_COMMENT_LENGTH = 1000


class StepInput(BaseModel):
    """One user reply: free text, a shared location, or both."""

    text: str | None = Field(default=None, max_length=4000)
    latitude: float | None = None
    longitude: float | None = None

    def coordinate(self) -> Coordinate | None:
        if self.latitude is None or self.longitude is None:
            return None
        return Coordinate(self.latitude, self.longitude)

    def clean_text(self) -> str | None:
        if self.text is None:
            return None
        stripped = self.text.strip()
        return stripped or None


class PlaceData(BaseModel):
    latitude: float
    longitude: float
    address: str

    def to_place(self) -> Place:
        return Place(Coordinate(self.latitude, self.longitude), self.address)


class TaskCreationState(BaseModel):
    flow: Literal["task_creation"] = FLOW_TASK_CREATION
    kind: TaskKind
    pickup: PlaceData | None = None
    dropoff: PlaceData | None = None
    location: PlaceData | None = None
    instructions: str | None = None


class RegistrationState(BaseModel):
    flow: Literal["registration"] = FLOW_REGISTRATION
    role: WorkerRole
    full_name: str | None = None
    phone_number: str | None = None
    bank_details: str | None = None
    national_id: str | None = None
    vehicle_type: VehicleType | None = None


class RatingState(BaseModel):
    flow: Literal["rating"] = FLOW_RATING
    task_id: str
    worker_id: str
    score: int | None = None
    comment: str | None = None


FlowState = Annotated[
    TaskCreationState | RegistrationState | RatingState, Field(discriminator="flow")
]
flow_state_adapter: TypeAdapter[FlowState] = TypeAdapter(FlowState)


def steps_for(state: FlowState) -> list[str]:
    if isinstance(state, TaskCreationState):
        if state.kind == TaskKind.delivery:
            return ["pickup", "dropoff", "instructions"]
        return ["location", "instructions"]
    if isinstance(state, RegistrationState):
        steps = ["full_name", "phone_number", "bank_details", "national_id"]
        if state.role == WorkerRole.rider:
            steps.append("vehicle_type")
        return steps
    return ["score", "comment"]


def next_step(state: FlowState, current: str) -> str | None:
    steps = steps_for(state)
    idx = steps.index(current)
    return steps[idx + 1] if idx + 1 < len(steps) else None


PROMPTS = {
    "pickup": "Share the pickup location, or type the pickup address.",
    "dropoff": "Now share the drop-off location, or type the drop-off address.",
    "location": "Share the errand location, or type the address.",
    "instructions": "Any instructions for the worker? Type them, or send 'skip'.",
    "full_name": "Please enter your full name.",
    "phone_number": "Please enter your phone number, e.g. +2348012345678.",
    "bank_details": "Enter your bank details: bank name, account number and account name.",
    "national_id": "Enter your 11-digit national identification number (NIN).",
    "vehicle_type": "Which vehicle do you use? motorcycle, car, van or bicycle.",
    "score": "How would you rate the worker? Send a number from 1 to 5.",
    "comment": "Anything you'd like to add about the service? Type it, or send 'skip'.",
}


def _is_skip(text: str | None) -> bool:
    return text is None or text.lower() in settings.skip_tokens


def validate_full_name(text: str | None) -> str:
    if not text or len(text) < 3:
        raise ValidationError("Please enter a valid full name (at least 3 characters).")
    if len(text) > 200:
        raise ValidationError("That name is too long.")
    return text


def validate_phone_number(text: str | None) -> str:
    phone = (text or "").replace(" ", "").replace("-", "")
    if not _PHONE_RE.match(phone):
        raise ValidationError(
            "Please enter a valid phone number (10-15 digits, optionally starting with +)."
        )
    return phone


def validate_bank_details(text: str | None) -> str:
    if not text or len(text) < 10:
        raise ValidationError("Please provide more detailed bank account information.")
    return text


def validate_national_id(text: str | None) -> str:
    nin = (text or "").replace(" ", "")
    if not _NATIONAL_ID_RE.match(nin):
        raise ValidationError("A national id is exactly 11 digits.")
    return nin


def validate_vehicle_type(text: str | None) -> VehicleType:
    try:
        return VehicleType((text or "").lower())
    except ValueError:
        options = ", ".join(v.value for v in VehicleType)
        raise ValidationError(f"Please choose one of: {options}.") from None


def validate_score(text: str | None) -> int:
    if text and text.isdigit() and 1 <= int(text) <= 5:
        return int(text)
    raise ValidationError("Please send a whole number from 1 to 5.")


def validate_optional_text(text: str | None, max_length: int) -> str | None:
    if _is_skip(text):
        return None
    if len(text) > max_length:
        raise ValidationError(f"Please keep it under {max_length} characters.")
    return text


async def resolve_place(step_input: StepInput, geocoder: Geocoder) -> PlaceData:
    """Turn a shared location or a typed address into a resolved place."""
    coord = step_input.coordinate()
    if coord is not None:
        if not coord.is_valid():
            raise ValidationError("That location is outside the valid coordinate range.")
        address = await call_external("reverse_resolve", geocoder.reverse_resolve, coord)
        return PlaceData(latitude=coord.latitude, longitude=coord.longitude, address=address)

    text = step_input.clean_text()
    if not text:
        raise ValidationError("Please share a location or type an address.")
    place = await call_external("resolve_address", geocoder.resolve_address, text)
    if place is None:
        raise ValidationError(
            "We couldn't find that address. Try sharing your location instead."
        )
    return PlaceData(
        latitude=place.coordinate.latitude,
        longitude=place.coordinate.longitude,
        address=place.address,
    )


async def parse_step(
    state: FlowState, step: str, step_input: StepInput, geocoder: Geocoder
) -> object:
    """Validate input for ``step`` and return the value to store."""
    text = step_input.clean_text()
    if step in ("pickup", "dropoff", "location"):
        return await resolve_place(step_input, geocoder)
    if step == "instructions":
        return validate_optional_text(text, MAX_INSTRUCTIONS_LENGTH)
    if step == "comment":
        return validate_optional_text(text, MAX_COMMENT_LENGTH)
    if step == "full_name":
        return validate_full_name(text)
    if step == "phone_number":
        return validate_phone_number(text)
    if step == "bank_details":
        return validate_bank_details(text)
    if step == "national_id":
        return validate_national_id(text)
    if step == "vehicle_type":
        return validate_vehicle_type(text)
    if step == "score":
        return validate_score(text)
    raise ValueError(f"Unknown step {step!r} for flow {state.flow}")


def apply_step(state: FlowState, step: str, value: object) -> FlowState:
    return state.model_copy(update={step: value})
