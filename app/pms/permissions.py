"""
Permission catalog and default role grants.

Seeded by scripts/init_db.py; tests seed from the same tables so role
behaviour in tests matches a fresh deployment.
"""
from __future__ import annotations

ROLE_NAMES = {
    "admin": "Administrator",
    "physician": "Physician",
    "patient": "Patient",
    "staff": "Staff",
}

PERMISSIONS: list[tuple[str, str]] = [
    ("admin.view", "Admin: view console"),
    ("users.manage", "Users: manage accounts and roles"),
    ("audit.view", "Audit log: view"),
    ("locations.manage", "Locations: create and edit"),
    ("catalog.manage", "Service catalog: create and edit"),
    ("analytics.view", "Analytics: network and revenue"),
    ("memberships.view", "Memberships: view tiers"),
    ("notifications.view", "Notifications: view own"),
    # Patient portal
    ("appointments.book", "Appointments: book and cancel own"),
    ("encounters.view_own", "Encounters: view own"),
    ("billing.view_own", "Billing: view own invoices and payments"),
    ("billing.pay", "Billing: pay invoices"),
    ("insurance.request", "Insurance: request verification"),
    ("claims.view_own", "Claims: view own and add notes"),
    ("telemedicine.request", "Telemedicine: request and join sessions"),
    # Physician portal
    ("schedule.view", "Schedule: view own"),
    ("patients.view", "Patients: view assigned"),
    ("encounters.document", "Encounters: document and complete"),
    ("telemedicine.conduct", "Telemedicine: conduct sessions"),
    # Staff console
    ("appointments.manage", "Appointments: confirm, cancel, check in"),
    ("tasks.manage", "Tasks: create and complete"),
    ("invoices.manage", "Invoices: create, send and void"),
    ("insurance.verify", "Insurance: record verification results"),
    ("claims.manage", "Claims: create and update status"),
    ("telemedicine.manage", "Telemedicine: approve and cancel sessions"),
]

_PATIENT = [
    "notifications.view",
    "appointments.book",
    "encounters.view_own",
    "billing.view_own",
    "billing.pay",
    "insurance.request",
    "claims.view_own",
    "telemedicine.request",
]

_PHYSICIAN = [
    "notifications.view",
    "schedule.view",
    "patients.view",
    "encounters.document",
    "telemedicine.conduct",
]

_STAFF = [
    "notifications.view",
    "appointments.manage",
    "tasks.manage",
    "invoices.manage",
    "insurance.verify",
    "claims.manage",
    "telemedicine.manage",
]

ROLE_PERMISSIONS: dict[str, list[str]] = {
    "admin": [key for key, _ in PERMISSIONS],
    "physician": _PHYSICIAN,
    "patient": _PATIENT,
    "staff": _STAFF,
}


def seed_roles_and_permissions(s) -> dict[str, object]:
    """Idempotently create every permission and role; returns roles by key."""
    from app.pms.models import Permission, Role

    perms = {}
    for key, name in PERMISSIONS:
        p = s.query(Permission).filter(Permission.key == key).one_or_none()
        if not p:
            p = Permission(key=key, name=name)
            s.add(p)
        perms[key] = p

    roles = {}
    for role_key, role_name in ROLE_NAMES.items():
        role = s.query(Role).filter(Role.key == role_key).one_or_none()
        if not role:
            role = Role(key=role_key, name=role_name)
            s.add(role)
        for perm_key in ROLE_PERMISSIONS[role_key]:
            p = perms[perm_key]
            if p not in role.permissions:
                role.permissions.append(p)
        roles[role_key] = role
    s.flush()
    return roles
