import pytest

from checkout import (
    GuestShippingForm,
    calculate_shipping,
    next_step,
    validate_guest_form,
    validate_step,
)


def guest_form(**overrides):
    data = {
        "email": "a@b.com",
        "firstName": "Ahmad",
        "lastName": "Karimi",
        "phone": "+93 700 000 000",
        "coordinates": {"latitude": 34.5, "longitude": 69.2},
    }
    data.update(overrides)
    return GuestShippingForm(**data)


@pytest.mark.parametrize("subtotal", [0, 99.99, 5000])
def test_always_free_is_zero(subtotal):
    assert calculate_shipping("always_free", subtotal, 1000, 50) == 0


@pytest.mark.parametrize("subtotal", [0, 999, 1000, 5000])
def test_always_charged_is_fee(subtotal):
    assert calculate_shipping("always_charged", subtotal, 1000, 50) == 50


def test_free_above_threshold():
    assert calculate_shipping("free_above_threshold", 999.99, 1000, 50) == 50
    assert calculate_shipping("free_above_threshold", 1000, 1000, 50) == 0
    assert calculate_shipping("free_above_threshold", 1500, 1000, 50) == 0


def test_unknown_mode_raises():
    with pytest.raises(ValueError):
        calculate_shipping("sometimes", 10, 100, 5)


def test_well_formed_guest_passes():
    assert validate_guest_form(guest_form()) == []


def test_guest_email_without_at_fails():
    errors = validate_guest_form(guest_form(email="ab.com"))
    assert errors == ["A valid email address is required"]


def test_guest_phone_with_letters_fails():
    errors = validate_guest_form(guest_form(phone="+93 CALL ME"))
    assert errors == ["A valid phone number is required"]


def test_guest_null_coordinates_fail():
    errors = validate_guest_form(guest_form(coordinates={"latitude": None, "longitude": None}))
    assert errors == ["Please pick your delivery location on the map"]


def test_guest_names_required():
    errors = validate_guest_form(guest_form(firstName=" ", lastName=""))
    assert "First name is required" in errors
    assert "Last name is required" in errors


def test_empty_guest_form_reports_everything():
    assert len(validate_step(1, authenticated=False)) == 5


def test_authenticated_requires_saved_address_and_selection():
    address = {"first_name": "A", "last_name": "B"}
    assert validate_step(1, authenticated=True) == ["Please add a shipping address"]
    assert validate_step(1, authenticated=True, addresses=[address]) == ["Please select a shipping address"]
    assert validate_step(1, authenticated=True, addresses=[address], selected_address=3) == [
        "Please select a shipping address"
    ]
    assert validate_step(1, authenticated=True, addresses=[address], selected_address=0) == []


def test_payment_step_always_valid():
    assert validate_step(2, authenticated=False) == []


def test_review_step_revalidates_shipping():
    assert validate_step(3, authenticated=False, guest_form=guest_form()) == []
    assert validate_step(3, authenticated=False, guest_form=guest_form(email="nope")) != []


def test_unknown_step_raises():
    with pytest.raises(ValueError):
        validate_step(4, authenticated=False)


def test_next_step_stops_at_review():
    assert next_step(1, []) == 2
    assert next_step(3, []) == 3
    assert next_step(1, ["error"]) == 1
