"""
Create the schema and seed the permission catalog, default roles and the
superadmin account. Idempotent: safe to run on every deploy.

Usage:
  python scripts/init_db.py            # schema + catalog + superadmin
  python scripts/init_db.py --demo     # also demo companies/projects/users (not in production)
"""
import argparse
import os
import sys
from pathlib import Path

from werkzeug.security import generate_password_hash

# Ensure repo root is on sys.path when running as a script (Windows-friendly).
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.tenantdesk import soft_delete
from app.tenantdesk.catalog import CLIENT_ROLE, SUPERADMIN_ROLE, ensure_role, seed_catalog
from app.tenantdesk.models import Company, Dashboard, Project, User
from scripts._db_utils import create_schema, script_session

DEMO_PASSWORD = "password123"


def _is_production() -> bool:
    return (os.environ.get("ENV") or "").strip().lower() in ("prod", "production")


def ensure_user(s, *, email: str, name: str, password: str, role, company=None) -> tuple[User, bool]:
    """Find-or-create by email. Never overwrites an existing user's password."""
    user = s.query(User).filter(User.email == email).one_or_none()
    if user:
        return user, False
    user = User(
        email=email,
        name=name,
        password_hash=generate_password_hash(password),
        is_active=True,
        role_id=role.id,
        company_id=company.id if company else None,
    )
    s.add(user)
    soft_delete.count_created(s, user)
    return user, True


def seed_only(*, database_url: str | None = None) -> None:
    """
    Seed permissions/roles/superadmin user in an idempotent way.
    Does NOT overwrite an existing superadmin user's password.
    """
    admin_email = (os.environ.get("ADMIN_EMAIL") or "superadmin@example.com").strip().lower()
    admin_password = os.environ.get("ADMIN_PASSWORD") or "change-me"
    if _is_production() and admin_password == "change-me":
        raise RuntimeError("ADMIN_PASSWORD must be set to a strong value in production (not default).")

    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///tenantdesk.db").strip()
    create_schema(db_url)

    with script_session(db_url) as s:
        perms = seed_catalog(s)
        superadmin = ensure_role(s, SUPERADMIN_ROLE)
        _, created = ensure_user(s, email=admin_email, name="Super Admin", password=admin_password, role=superadmin)

    print(f"Initialized database: {len(perms)} permissions, roles {SUPERADMIN_ROLE}/{CLIENT_ROLE}.")
    print(f"Superadmin email: {admin_email} ({'created' if created else 'already present'})")
    print("Superadmin password: (from ADMIN_PASSWORD)")


def _ensure_company(s, name: str, description: str) -> Company:
    company = s.query(Company).filter(Company.name == name).one_or_none()
    if not company:
        company = Company(name=name, description=description, status="active", users_count=0, projects_count=0)
        s.add(company)
        s.flush()
    return company


def _ensure_project(s, company: Company, name: str, icon: str, position: int) -> Project:
    project = s.query(Project).filter(Project.company_id == company.id, Project.name == name).one_or_none()
    if not project:
        project = Project(company_id=company.id, name=name, icon=icon, sidebar_position=position, status="active")
        s.add(project)
        soft_delete.count_created(s, project)
    return project


def _ensure_dashboard(s, project: Project, name: str, embed_url: str, position: int) -> Dashboard:
    dashboard = s.query(Dashboard).filter(Dashboard.project_id == project.id, Dashboard.name == name).one_or_none()
    if not dashboard:
        dashboard = Dashboard(project_id=project.id, name=name, embed_url=embed_url, embed_type="iframe", position=position)
        s.add(dashboard)
        s.flush()
    return dashboard


def seed_demo(*, database_url: str | None = None) -> None:
    """Demo tenants for local development. Refuses to run in production."""
    if _is_production():
        raise RuntimeError("Demo seeding is disabled in production.")
    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///tenantdesk.db").strip()

    with script_session(db_url) as s:
        client = ensure_role(s, CLIENT_ROLE)
        demo = (
            ("Acme Corporation", "Global technology solutions provider", "john.doe@acme.com", "John Doe"),
            ("TechVision Inc", "Innovative software development company", "jane.smith@techvision.com", "Jane Smith"),
            ("DataFlow Solutions", "Data analytics and business intelligence", "bob.wilson@dataflow.com", "Bob Wilson"),
        )
        for name, description, email, person in demo:
            company = _ensure_company(s, name, description)
            user, _ = ensure_user(s, email=email, name=person, password=DEMO_PASSWORD, role=client, company=company)
            sales = _ensure_project(s, company, "Sales Analytics", "bi-graph-up", 1)
            ops = _ensure_project(s, company, "Operations", "bi-gear", 2)
            d1 = _ensure_dashboard(s, sales, "Revenue Overview", "https://app.powerbi.com/view?r=demo-revenue", 1)
            _ensure_dashboard(s, sales, "Pipeline", "https://app.powerbi.com/view?r=demo-pipeline", 2)
            _ensure_dashboard(s, ops, "Fulfilment", "https://lookerstudio.google.com/embed/reporting/demo", 1)
            if user not in d1.users:
                d1.users.append(user)

    print(f"Demo data seeded (password for demo users: {DEMO_PASSWORD}).")


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument("--demo", action="store_true", help="also seed demo tenants (development only)")
    args = parser.parse_args()
    seed_only(database_url=None)
    if args.demo:
        seed_demo(database_url=None)


if __name__ == "__main__":
    main()
