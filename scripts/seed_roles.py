#!/usr/bin/env python3
"""
Seed the approval roles and their permission maps.

Usage:
  python scripts/seed_roles.py
  python scripts/seed_roles.py --levels 2

Idempotent: existing roles get the listed permissions merged in.
"""
import argparse
import os
import sys
from typing import Dict, Optional

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dotenv import load_dotenv

load_dotenv()

from simaset.auth.authorization import (
    ADJUST_STOCK,
    APPROVAL_LEVEL_PERMISSIONS,
    APPROVE_OFFICE_REQUESTS,
    MANAGE_ITEM_REQUESTS,
    MANAGE_OFFICE_SUPPLIES,
    VIEW_NOTIFICATION_LOGS,
)
from simaset.config import settings
from simaset.db import Base, SessionLocal, engine
from simaset.models.models import Role


ROLE_PERMISSIONS = {
    "admin": {},
    settings.operator_role: {
        APPROVAL_LEVEL_PERMISSIONS[1]: True,
        MANAGE_ITEM_REQUESTS: True,
        MANAGE_OFFICE_SUPPLIES: True,
        APPROVE_OFFICE_REQUESTS: True,
        ADJUST_STOCK: True,
    },
    "kasubag_umum": {APPROVAL_LEVEL_PERMISSIONS[2]: True, VIEW_NOTIFICATION_LOGS: True},
    "kpa": {APPROVAL_LEVEL_PERMISSIONS[3]: True, VIEW_NOTIFICATION_LOGS: True},
    "pegawai": {},
}


def ensure_role(session, name: str, permissions: Optional[Dict[str, bool]] = None) -> Role:
    role = session.query(Role).filter(Role.name == name).first()
    if role is None:
        role = Role(name=name, description=name.replace("_", " ").title(), permissions=dict(permissions or {}))
        session.add(role)
        print(f"Created role {name}")
        return role
    merged = dict(role.permissions or {})
    merged.update(permissions or {})
    role.permissions = merged
    print(f"Updated role {name}")
    return role


def main():
    parser = argparse.ArgumentParser(description="Seed approval roles")
    parser.add_argument("--levels", type=int, default=settings.approval_levels, choices=[1, 2, 3],
                        help="Number of approval levels in use")
    args = parser.parse_args()

    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        for name, permissions in ROLE_PERMISSIONS.items():
            # Drop approval permissions for levels that are not in use
            permissions = {
                perm: value
                for perm, value in permissions.items()
                if perm not in APPROVAL_LEVEL_PERMISSIONS.values()
                or perm in [APPROVAL_LEVEL_PERMISSIONS[level] for level in range(1, args.levels + 1)]
            }
            ensure_role(db, name, permissions)
        db.commit()
    finally:
        db.close()
    print("Done.")


if __name__ == "__main__":
    main()
