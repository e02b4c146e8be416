"""
Checkout rules: the three step wizard (shipping, payment, review) and the
shipping fee policy.
"""
import re
from typing import List, Optional, Sequence

from schemas import CamelModel, Coordinates

SHIPPING_STEP = 1
PAYMENT_STEP = 2
REVIEW_STEP = 3
LAST_STEP = REVIEW_STEP

ALWAYS_FREE = "always_free"
FREE_ABOVE_THRESHOLD = "free_above_threshold"
ALWAYS_CHARGED = "always_charged"

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_RE = re.compile(r"^[+\d\s()-]+$")

# Only cash on delivery is live, the others are shown as unavailable
PAYMENT_METHODS = [
    {"value": "cod", "label": "Cash on Delivery", "available": True},
    {"value": "bank_transfer", "label": "Bank Transfer", "available": False},
    {"value": "credit_card", "label": "Credit Card", "available": False},
]
DEFAULT_PAYMENT_METHOD = "cod"


def calculate_shipping(mode: str, subtotal: float, threshold: float, fee: float) -> float:
    if mode == ALWAYS_FREE:
        return 0
    if mode == ALWAYS_CHARGED:
        return fee
    if mode == FREE_ABOVE_THRESHOLD:
        return 0 if subtotal >= threshold else fee
    raise ValueError(f"Unknown shipping mode: {mode}")


class GuestShippingForm(CamelModel):
    email: str = ""
    first_name: str = ""
    last_name: str = ""
    phone: str = ""
    state: Optional[str] = None
    country: Optional[str] = None
    nearby_landmark: Optional[str] = None
    detailed_directions: Optional[str] = None
    coordinates: Coordinates = Coordinates()


def validate_guest_form(form: GuestShippingForm) -> List[str]:
    errors = []
    if not form.first_name.strip():
        errors.append("First name is required")
    if not form.last_name.strip():
        errors.append("Last name is required")
    if not EMAIL_RE.match(form.email.strip()):
        errors.append("A valid email address is required")
    if not PHONE_RE.match(form.phone.strip()):
        errors.append("A valid phone number is required")
    if form.coordinates.latitude is None or form.coordinates.longitude is None:
        errors.append("Please pick your delivery location on the map")
    return errors


def validate_shipping_step(authenticated: bool, addresses: Sequence = (),
                           selected_address: Optional[int] = None,
                           guest_form: Optional[GuestShippingForm] = None) -> List[str]:
    if authenticated:
        if not addresses:
            return ["Please add a shipping address"]
        if selected_address is None or not 0 <= selected_address < len(addresses):
            return ["Please select a shipping address"]
        return []
    return validate_guest_form(guest_form or GuestShippingForm())


def validate_step(step: int, *, authenticated: bool, addresses: Sequence = (),
                  selected_address: Optional[int] = None,
                  guest_form: Optional[GuestShippingForm] = None) -> List[str]:
    """Return the errors blocking ``step``; an empty list means it may proceed.

    The review step has no fields of its own, placing the order re-checks
    the shipping step.
    """
    if step == PAYMENT_STEP:
        return []
    if step in (SHIPPING_STEP, REVIEW_STEP):
        return validate_shipping_step(authenticated, addresses, selected_address, guest_form)
    raise ValueError(f"Unknown checkout step: {step}")


def next_step(step: int, errors: List[str]) -> int:
    if errors:
        return step
    return min(step + 1, LAST_STEP)
