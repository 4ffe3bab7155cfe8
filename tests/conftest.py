import os

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session, SQLModel, create_engine

from cas_auth.config import CasSourceConfig
from cas_auth.core.state import SQLStateStore
from cas_auth.main import app
from cas_auth.models import User
from cas_auth.routers.sso import build_registry, get_registry, get_state_store

from sqlalchemy.pool import StaticPool

RESPONSES = os.path.join(os.path.dirname(__file__), "responses")

# Use in-memory database for testing
sqlite_url = "sqlite://" # Use shared memory url
engine = create_engine(
    sqlite_url,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool
)

AUTHSOURCES = {
    "something": {
        "cas": {
            "login": "https://example.org/login",
            "validate": "https://example.org/validate",
        },
        "ldap": {},
    },
    "casserver": {
        "cas": {
            "login": "https://ugrad.apply.example.edu/account/cas/login",
            "serviceValidate": "https://ugrad.apply.example.edu/account/cas/serviceValidate",
            "logout": "https://ugrad.apply.example.edu/account/cas/logout",
            "attributes": {
                "uid": "cas:user",
                # target the intended person under cas:attributes
                "person": "cas:attributes/slate:person",
                # the top-level one under its own key
                "person_top": "slate:person",
                "sn": "cas:attributes/cas:sn",
                "givenName": "cas:attributes/cas:firstname",
                "mail": "cas:attributes/cas:mail",
                "eduPersonPrincipalName": "cas:attributes/cas:eduPersonPrincipalName",
            },
        },
        "ldap": {},
    },
    "casserver_legacy": {
        "cas": {
            "login": "https://ugrad.apply.example.edu/account/cas/login",
            "serviceValidate": "https://ugrad.apply.example.edu/account/cas/serviceValidate",
            "logout": "https://ugrad.apply.example.edu/account/cas/logout",
            "attributes": {
                "uid": "/cas:serviceResponse/cas:authenticationSuccess/cas:user",
                "person": "/cas:serviceResponse/cas:authenticationSuccess/cas:attributes/slate:person",
                "person_top": "/cas:serviceResponse/cas:authenticationSuccess/slate:person",
                "sn": "/cas:serviceResponse/cas:authenticationSuccess/cas:attributes/cas:sn",
                "givenName": "/cas:serviceResponse/cas:authenticationSuccess/cas:attributes/cas:firstname",
                "mail": "/cas:serviceResponse/cas:authenticationSuccess/cas:attributes/cas:mail",
                "eduPersonPrincipalName": "/cas:serviceResponse/cas:authenticationSuccess/cas:attributes/cas:eduPersonPrincipalName",
            },
        },
        "ldap": {},
    },
    "casserver_auto_map": {
        "cas": {
            "login": "https://ugrad.apply.example.edu/account/cas/login",
            "serviceValidate": "https://ugrad.apply.example.edu/account/cas/serviceValidate",
            "logout": "https://ugrad.apply.example.edu/account/cas/logout",
            "slate.enabled": True,
        },
        "ldap": {},
    },
    "casserver_directory": {
        "cas": {
            "login": "https://cas.example.org/login",
            "serviceValidate": "https://cas.example.org/serviceValidate",
        },
        "ldap": {"authsource": "local-directory"},
    },
}


def read_response(name):
    with open(os.path.join(RESPONSES, name), encoding="utf-8") as f:
        return f.read()


@pytest.fixture(name="session")
def session_fixture():
    SQLModel.metadata.create_all(engine)
    with Session(engine) as session:
        yield session
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(name="state_store")
def state_store_fixture(session):
    return SQLStateStore(engine)


@pytest.fixture(name="configs")
def configs_fixture():
    return {auth_id: CasSourceConfig.from_authsource(entry) for auth_id, entry in AUTHSOURCES.items()}


@pytest.fixture(name="registry")
def registry_fixture(configs, state_store):
    return build_registry(configs, state_store, engine)


@pytest.fixture(name="client")
def client_fixture(registry, state_store):
    app.dependency_overrides[get_registry] = lambda: registry
    app.dependency_overrides[get_state_store] = lambda: state_store

    client = TestClient(app)
    yield client
    app.dependency_overrides.clear()


@pytest.fixture(name="directory_user")
def directory_user_fixture(session: Session):
    user = User(
        uid="jdoe",
        display_name="John Doe",
        mail="john.doe@directory.example.edu",
        department="Admissions",
        affiliation=["staff", "member"],
    )
    session.add(user)
    session.commit()
    session.refresh(user)
    return user
