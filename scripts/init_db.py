import os
import sys
from contextlib import contextmanager
from pathlib import Path

from werkzeug.security import generate_password_hash

# Ensure repo root is on sys.path when running as a script.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.petmemorial.db import make_engine, make_sessionmaker  # noqa: E402
from app.petmemorial.models import Base, Permission, Role, User  # noqa: E402

PERMISSIONS = (
    ("admin.view", "Admin: view status"),
    ("memorials.view", "Memorials: view dashboard"),
    ("memorials.edit", "Memorials: create and edit"),
    ("memorials.delete", "Memorials: delete"),
)


@contextmanager
def _session_scope(database_url: str):
    s = make_sessionmaker(make_engine(database_url))()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()


def seed_only(*, database_url: str | None = None) -> None:
    """
    Seed permissions/roles/admin user in an idempotent way.
    Does NOT overwrite an existing admin user's password.
    """
    admin_email = (os.environ.get("ADMIN_EMAIL") or "admin@memorialpet.local").strip().lower()
    admin_password = os.environ.get("ADMIN_PASSWORD") or "change-me"

    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///petmemorial.db").strip()

    with _session_scope(db_url) as s:
        perms = []
        for key, name in PERMISSIONS:
            p = s.query(Permission).filter(Permission.key == key).one_or_none()
            if not p:
                p = Permission(key=key, name=name)
                s.add(p)
            perms.append(p)

        role_admin = s.query(Role).filter(Role.key == "admin").one_or_none()
        if not role_admin:
            role_admin = Role(key="admin", name="Administrador")
            s.add(role_admin)
        for p in perms:
            if p not in role_admin.permissions:
                role_admin.permissions.append(p)

        user = s.query(User).filter(User.email == admin_email).one_or_none()
        if not user:
            user = User(email=admin_email, password_hash=generate_password_hash(admin_password), is_active=True)
            s.add(user)
        if role_admin not in user.roles:
            user.roles.append(role_admin)

    print("Initialized database (seed_only).")
    print(f"Admin email: {admin_email}")
    print("Admin password: (from ADMIN_PASSWORD)")


def main() -> None:
    """Local dev: create tables directly (no Alembic) and seed."""
    db_url = (os.environ.get("DATABASE_URL") or "sqlite:///petmemorial.db").strip()
    Base.metadata.create_all(bind=make_engine(db_url))
    seed_only(database_url=db_url)


if __name__ == "__main__":
    main()
