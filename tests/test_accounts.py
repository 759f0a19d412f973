import pytest
from sqlalchemy.orm import sessionmaker

from database import Base, create_store_engine
from errors import ConflictError, NotFoundError, ValidationError
from models import UserRole
from services import (
    OrganizationService,
    TransactionService,
    UserService,
    authenticate,
    verify_password,
)


def make_session():
    engine = create_store_engine("sqlite+pysqlite:///:memory:")
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)()


def registration(email: str = "owner@acme.test", org_name: str = "Acme"):
    return {
        "email": email,
        "password": "secret123",
        "firstName": "Ada",
        "lastName": "Lovelace",
        "organizationName": org_name,
        "organizationDetails": {"address": "1 Main St", "phone": "555-0100"},
    }


def test_register_creates_organization_and_super_admin():
    session = make_session()

    org, user = OrganizationService(session).register(registration(email="Owner@Acme.test"))

    assert org.name == "Acme"
    assert org.address == "1 Main St"
    assert user.organization_id == org.id
    assert user.role == UserRole.super_admin
    assert user.email == "owner@acme.test"
    assert user.is_active is True
    assert user.password_hash != "secret123"
    assert verify_password("secret123", user.password_hash)


def test_register_rejects_duplicate_email():
    session = make_session()
    OrganizationService(session).register(registration())

    with pytest.raises(ConflictError) as excinfo:
        OrganizationService(session).register(registration(org_name="Other"))

    assert excinfo.value.code == "email_exists"


def test_register_validates_payload():
    session = make_session()
    payload = registration()
    payload["password"] = "123"

    with pytest.raises(ValidationError):
        OrganizationService(session).register(payload)


def test_authenticate_checks_password_and_active_flag():
    session = make_session()
    org, owner = OrganizationService(session).register(registration())

    assert authenticate(session, "OWNER@acme.test", "secret123").id == owner.id
    assert authenticate(session, "owner@acme.test", "wrong") is None
    assert authenticate(session, "nobody@acme.test", "secret123") is None

    UserService(session, org.id).update(owner.id, {"isActive": False})
    assert authenticate(session, "owner@acme.test", "secret123") is None


def test_organization_update_is_partial():
    session = make_session()
    org, _ = OrganizationService(session).register(registration())

    updated = OrganizationService(session).update(org.id, {"phone": "555-0199"})

    assert updated.phone == "555-0199"
    assert updated.name == "Acme"
    with pytest.raises(NotFoundError):
        OrganizationService(session).get("missing-org")


def test_user_management_is_tenant_scoped():
    session = make_session()
    acme, _ = OrganizationService(session).register(registration())
    globex, _ = OrganizationService(session).register(
        registration(email="owner@globex.test", org_name="Globex")
    )
    clerk = UserService(session, acme.id).create(
        {
            "email": "clerk@acme.test",
            "password": "secret123",
            "firstName": "Cleo",
            "lastName": "Clerk",
            "role": "VIEWER",
        }
    )

    assert clerk.organization_id == acme.id
    assert clerk.role == UserRole.viewer
    assert {user.email for user in UserService(session, acme.id).list_all()} == {
        "owner@acme.test",
        "clerk@acme.test",
    }
    with pytest.raises(NotFoundError):
        UserService(session, globex.id).get(clerk.id)
    with pytest.raises(NotFoundError):
        UserService(session, globex.id).update(clerk.id, {"role": "ADMIN"})


def test_user_create_rejects_super_admin_role_and_duplicate_email():
    session = make_session()
    org, _ = OrganizationService(session).register(registration())
    service = UserService(session, org.id)
    base = {"password": "secret123", "firstName": "Sam", "lastName": "Smith"}

    with pytest.raises(ValidationError):
        service.create({**base, "email": "sam@acme.test", "role": "SUPER_ADMIN"})
    with pytest.raises(ConflictError):
        service.create({**base, "email": "owner@acme.test"})


def test_user_delete_rules():
    session = make_session()
    org, owner = OrganizationService(session).register(registration())
    service = UserService(session, org.id)
    base = {"password": "secret123", "firstName": "Sam", "lastName": "Smith"}
    idle = service.create({**base, "email": "idle@acme.test"})
    busy = service.create({**base, "email": "busy@acme.test"})
    TransactionService(session, org.id).create(
        {
            "type": "INCOME",
            "amount": "10",
            "description": "Donation",
            "paymentMethod": "CASH",
            "payerPayee": "Visitor",
            "transactionDate": "2024-01-05T09:00:00",
        },
        created_by_id=busy.id,
    )

    with pytest.raises(ValidationError):
        service.delete(owner.id, acting_user_id=owner.id)
    with pytest.raises(ConflictError) as excinfo:
        service.delete(busy.id, acting_user_id=owner.id)
    assert excinfo.value.code == "user_has_transactions"

    service.delete(idle.id, acting_user_id=owner.id)
    with pytest.raises(NotFoundError):
        service.get(idle.id)
