import os
import sys
from pathlib import Path

from werkzeug.security import generate_password_hash

# Ensure repo root is on sys.path when running as a script.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.pms.models import User
from app.pms.modules.billing.models import MembershipTier
from app.pms.modules.billing.service import MEMBERSHIP_PRICING
from app.pms.permissions import seed_roles_and_permissions
from scripts._db_utils import script_session

# name -> (display name, discount pct, features)
MEMBERSHIP_TIERS: dict[str, tuple[str, int, list[str]]] = {
    "platinum": (
        "Platinum",
        25,
        [
            "Unlimited consultations and appointments",
            "Priority scheduling with same day availability",
            "Direct physician access",
            "Dedicated concierge coordinator",
            "Unlimited telemedicine",
        ],
    ),
    "gold": (
        "Gold",
        20,
        [
            "Priority access with same week appointments",
            "Quarterly health assessments",
            "Telemedicine included",
            "20% discount on services",
        ],
    ),
    "silver": (
        "Silver",
        10,
        [
            "Enhanced appointment access",
            "Telemedicine included",
            "10% discount on cash-pay services",
        ],
    ),
}


def seed_membership_tiers(s) -> None:
    for order, (name, (display, discount_pct, features)) in enumerate(MEMBERSHIP_TIERS.items()):
        monthly, annual = MEMBERSHIP_PRICING[name]
        tier = s.query(MembershipTier).filter(MembershipTier.name == name).one_or_none()
        if not tier:
            tier = MembershipTier(name=name)
            s.add(tier)
        tier.display_name = display
        tier.monthly_price_cents = monthly
        tier.annual_price_cents = annual
        tier.discount_pct = discount_pct
        tier.features = features
        tier.sort_order = order
        if tier.is_active is None:
            tier.is_active = True


def seed_only(*, database_url: str | None = None) -> None:
    """
    Seed permissions, roles, membership tiers and the admin user in an
    idempotent way. Does NOT overwrite an existing admin user's password.
    """
    admin_email = (os.environ.get("ADMIN_EMAIL") or "admin@example.com").strip().lower()
    admin_password = os.environ.get("ADMIN_PASSWORD") or "change-me"

    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///pms.db").strip()

    # Direct engine/session so release can seed without importing app.wsgi.
    with script_session(db_url) as s:
        roles = seed_roles_and_permissions(s)
        seed_membership_tiers(s)

        user = s.query(User).filter(User.email == admin_email).one_or_none()
        if not user:
            user = User(
                email=admin_email,
                password_hash=generate_password_hash(admin_password),
                is_active=True,
                first_name="Practice",
                last_name="Administrator",
            )
            s.add(user)
        if roles["admin"] not in user.roles:
            user.roles.append(roles["admin"])

    print("Initialized database (seed_only).")
    print(f"Admin email: {admin_email}")
    print("Admin password: (from ADMIN_PASSWORD)")


def main() -> None:
    seed_only(database_url=None)


if __name__ == "__main__":
    main()
