import pytest
from werkzeug.security import generate_password_hash

from app.kyudo import create_app
from app.kyudo.constants import SUB_PERMISSION_LABELS, RoleKey, SubPermission
from app.kyudo.db import session_scope
from app.kyudo.models import Base, Permission, Role, User
from app.kyudo.modules.profiles.models import Profile

PASSWORD = "password123"

# email -> (role, sub-permissions, profile fields or None)
MEMBERS = {
    "admin@example.com": (RoleKey.ADMIN, (), {"display_name": "管理 太郎"}),
    "alice@example.com": (
        RoleKey.USER,
        (),
        {
            "display_name": "Alice",
            "student_number": "S001",
            "generation": "60",
            "gender": "female",
            "department": "Engineering",
        },
    ),
    "bob@example.com": (
        RoleKey.USER,
        (SubPermission.CALENDAR_ADMIN,),
        {
            "display_name": "Bob",
            "student_number": "S002",
            "generation": "61",
            "gender": "male",
            "department": "Law",
        },
    ),
    "carol@example.com": (
        RoleKey.USER,
        (),
        {
            "display_name": "Carol",
            "student_number": "S003",
            "generation": "60",
            "gender": "female",
            "department": "",
        },
    ),
    "dave@example.com": (RoleKey.USER, (), None),
}


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("LOGIN_RATE_LIMIT", "5")
    monkeypatch.setenv("LOGIN_RATE_WINDOW", "300")

    app = create_app()
    app.config["TESTING"] = True

    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        roles = {key: Role(key=key.value, name=key.value) for key in RoleKey}
        perms = {p: Permission(key=p.value, name=label) for p, label in SUB_PERMISSION_LABELS.items()}
        s.add_all([*roles.values(), *perms.values()])
        for email, (role, subs, profile) in MEMBERS.items():
            u = User(email=email, password_hash=generate_password_hash(PASSWORD), is_active=True)
            u.roles.append(roles[role])
            for p in subs:
                u.permissions.append(perms[p])
            if profile is not None:
                u.profile = Profile(**profile)
            s.add(u)

    return app


@pytest.fixture()
def ids(app):
    """email -> account id"""
    with session_scope(app) as s:
        return {u.email: u.id for u in s.query(User).all()}


@pytest.fixture()
def login(app):
    """Returns a test client signed in as the given member, carrying its CSRF token."""

    def _login(email: str):
        client = app.test_client()
        r = client.post("/auth/login", json={"email": email, "password": PASSWORD})
        assert r.status_code == 200, r.json
        client.environ_base["HTTP_X_CSRF_TOKEN"] = r.json["csrf_token"]
        return client

    return _login


@pytest.fixture()
def client(app):
    return app.test_client()
