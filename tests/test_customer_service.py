import pytest

from lounge.models import LoyaltyTransaction, UserRole


def test_registration_normalizes_phone_and_hashes_password(customer):
    assert customer.phone_number == "254712345678"
    assert customer.role == UserRole.CUSTOMER
    assert customer.passwordHash and customer.passwordHash != "gamer-pass-123"
    assert len(customer.referral_code) == 8
    assert customer.points == 0


@pytest.mark.parametrize(
    "gaming_name, phone, expected",
    [
        ("ProGamer", "0799000111", "Gaming Name is already in use."),
        ("NewPlayer", "+254712345678", "Phone Number is already in use."),
        ("NewPlayer", "12345", "Invalid phone number format. Expected 254XXXXXXXXX"),
        ("", "0799000111", "Display name and gaming name are required"),
    ],
)
def test_registration_validation(customer_service, customer, gaming_name, phone, expected):
    success, message, _ = customer_service.register_customer("Jane", gaming_name, phone)
    assert not success
    assert message == expected


def test_referral_awards_the_referrer(customer_service, customer, db_session):
    success, _, friend = customer_service.register_customer(
        "Jane Wambui", "QueenJ", "0722000111", referral_code=customer.referral_code.lower()
    )

    assert success
    assert friend.referred_by_id == customer.userID
    assert customer.points == 10
    entry = db_session.query(LoyaltyTransaction).filter_by(userID=customer.userID).one()
    assert entry.description == "Referral bonus for QueenJ"


def test_unknown_referral_code(customer_service, db_session):
    success, message, _ = customer_service.register_customer("Jane", "QueenJ", "0722000111", referral_code="NOPE1234")
    assert not success
    assert message == "Referral code not recognised"


@pytest.mark.parametrize("identifier", ["ProGamer", "0712345678", "254712345678"])
def test_authenticate_by_gaming_name_or_phone(customer_service, customer, identifier):
    assert customer_service.authenticate(identifier, "gamer-pass-123").userID == customer.userID


def test_authenticate_rejects_bad_password(customer_service, customer):
    assert customer_service.authenticate("ProGamer", "wrong") is None
    assert customer_service.authenticate("", "gamer-pass-123") is None


def test_staff_accounts(customer_service, db_session):
    success, message, _ = customer_service.create_staff_user("Front Desk", "desk", "0700000002", "short")
    assert not success
    assert message == "Staff accounts need a password of at least 8 characters"

    success, message, _ = customer_service.create_staff_user("X", "x", "0700000003", "long-enough", role="customer")
    assert not success
    assert message == "Use customer registration for customer accounts"

    success, _, admin = customer_service.create_staff_user("Boss", "boss", "0700000001", "long-enough", role="admin")
    assert success
    assert admin.is_admin and admin.is_staff


def test_find_and_search_customers(customer_service, customer):
    assert customer_service.find_by_phone("0712 345 678").userID == customer.userID
    assert customer_service.find_by_phone("garbage") is None
    customer_service.register_customer("Alice Njeri", "AceAlice", "0733000111")

    assert [u.gaming_name for u in customer_service.list_customers()] == ["AceAlice", "ProGamer"]
    assert [u.gaming_name for u in customer_service.list_customers(search="pro")] == ["ProGamer"]


def test_update_customer(customer_service, customer):
    customer_service.register_customer("Alice Njeri", "AceAlice", "0733000111")

    success, message, _ = customer_service.update_customer(customer.userID, {"gaming_name": "AceAlice"})
    assert not success
    assert message == "Gaming Name is already in use."

    success, message, _ = customer_service.update_customer(customer.userID, {"display_name": "  "})
    assert not success
    assert message == "Display name cannot be empty"

    success, _, updated = customer_service.update_customer(
        customer.userID, {"display_name": "John <i>Doe</i>", "phone_number": "0799000111"}
    )
    assert success
    assert updated.display_name == "John Doe"
    assert updated.phone_number == "254799000111"
