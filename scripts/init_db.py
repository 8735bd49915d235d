import os
import sys
from pathlib import Path

from sqlalchemy import select
from werkzeug.security import generate_password_hash

# Ensure repo root is on sys.path when running as a script.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.kyudo.constants import SUB_PERMISSION_LABELS, RoleKey  # noqa: E402
from app.kyudo.models import Permission, Role, User  # noqa: E402
from app.kyudo.modules.profiles.models import Profile  # noqa: E402
from scripts._db_utils import script_session  # noqa: E402

ROLE_NAMES = {
    RoleKey.ADMIN: "管理者",
    RoleKey.USER: "部員",
}


def seed_only(*, database_url: str | None = None) -> None:
    """
    Seed roles/sub-permissions/admin account in an idempotent way.
    Does NOT overwrite an existing admin user's password.
    """
    admin_email = (os.environ.get("ADMIN_EMAIL") or "admin@kyudo.local").strip().lower()
    admin_password = os.environ.get("ADMIN_PASSWORD") or "change-me"

    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///kyudo.db").strip()

    with script_session(db_url) as s:
        roles: dict[RoleKey, Role] = {}
        for key, name in ROLE_NAMES.items():
            role = s.execute(select(Role).where(Role.key == key.value)).scalars().one_or_none()
            if not role:
                role = Role(key=key.value, name=name)
                s.add(role)
            roles[key] = role

        for perm, label in SUB_PERMISSION_LABELS.items():
            if s.execute(select(Permission).where(Permission.key == perm.value)).scalars().one_or_none() is None:
                s.add(Permission(key=perm.value, name=label))

        user = s.execute(select(User).where(User.email == admin_email)).scalars().one_or_none()
        if not user:
            user = User(email=admin_email, password_hash=generate_password_hash(admin_password), is_active=True)
            s.add(user)
        if roles[RoleKey.ADMIN] not in user.roles:
            user.roles.append(roles[RoleKey.ADMIN])
        if user.profile is None:
            user.profile = Profile(display_name="管理者")

    print("Initialized database (seed_only).")
    print(f"Admin email: {admin_email}")
    print("Admin password: (from ADMIN_PASSWORD)")


def main() -> None:
    seed_only(database_url=None)


if __name__ == "__main__":
    main()
