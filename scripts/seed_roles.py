"""
Seed script to populate the hierarchical system roles.

Run this script after database initialization to create or refresh:
- One administrator role per hierarchy level
- Team member, service coordinator and viewer roles

Existing system roles are updated in place so permission changes here reach
the database on the next run.

Usage:
    uv run python -m scripts.seed_roles
"""
import asyncio
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from hierarchy_auth.core.database.engine import AsyncSessionLocal, init_db
from hierarchy_auth.features.permissions.models import Role
from hierarchy_auth.utils import get_logger


log = get_logger(__name__)


DEFAULT_ROLES = {
    # LEVEL 0: UNION
    "super_admin": {
        "display_name": "Super Administrator",
        "description": "Full system access including system administration",
        "hierarchy_level": 0,
        "can_manage": [1, 2, 3, 4],
        "permissions": ["*"],
    },
    "union_admin": {
        "display_name": "Union Administrator",
        "description": "Administrative access for union level operations",
        "hierarchy_level": 0,
        "can_manage": [1, 2, 3, 4],
        "permissions": [
            "organizations.update:subordinate",
            "organizations.delete:subordinate",
            "teams.delete:subordinate",
            "services.delete:subordinate",
            "users.manage:subordinate",
            "roles.assign:subordinate",
            "dashboard.view",
            "reports.generate:subordinate",
        ],
    },
    # LEVEL 1: CONFERENCE
    "conference_admin": {
        "display_name": "Conference Administrator",
        "description": "Administrative access for conference level",
        "hierarchy_level": 1,
        "can_manage": [2, 3, 4],
        "permissions": [
            "organizations.update:subordinate",
            "organizations.delete:subordinate",
            "teams.delete:subordinate",
            "services.delete:subordinate",
            "users.manage:subordinate",
            "roles.assign:subordinate",
            "dashboard.view",
        ],
    },
    # LEVEL 2: CHURCH
    "church_admin": {
        "display_name": "Church Administrator",
        "description": "Full access within own church",
        "hierarchy_level": 2,
        "can_manage": [3, 4],
        "permissions": [
            "teams.update:own",
            "teams.delete:own",
            "services.manage:subordinate",
            "users.manage:own",
            "roles.assign:subordinate",
            "dashboard.view",
        ],
    },
    # LEVEL 3: TEAM
    "team_leader": {
        "display_name": "Team Leader",
        "description": "Team leadership with service management",
        "hierarchy_level": 3,
        "can_manage": [4],
        "permissions": [
            "services.update:own",
            "services.delete:own",
            "teams.view:subordinate",
            "teams.update:subordinate",
        ],
    },
    "team_member": {
        "display_name": "Team Member",
        "description": "Basic team member access",
        "hierarchy_level": 3,
        "can_manage": [],
        "permissions": [
            "teams.view:subordinate",
        ],
    },
    # LEVEL 4: SERVICE
    "service_coordinator": {
        "display_name": "Service Coordinator",
        "description": "Service-level coordinator with limited access",
        "hierarchy_level": 4,
        "can_manage": [],
        "permissions": [
            "services.view:subordinate",
            "services.update:subordinate",
        ],
    },
    # VIEWERS
    "church_viewer": {
        "display_name": "Church Viewer",
        "description": "Read-only access to public information",
        "hierarchy_level": 2,
        "can_manage": [],
        "permissions": ["services.view:all", "stories.view:all"],
    },
}


async def seed_roles(db: AsyncSession) -> int:
    """
    Create or refresh the default roles.

    Returns:
        Number of roles created (updates are not counted)
    """
    log.info("Creating default roles...")
    created = 0

    for role_name, role_config in DEFAULT_ROLES.items():
        stmt = select(Role).where(Role.name == role_name)
        result = await db.execute(stmt)
        role = result.scalars().first()

        if role is None:
            role = Role(name=role_name, is_system=True)
            db.add(role)
            created += 1
            log.info(f"Created role '{role_name}' with {len(role_config['permissions'])} permissions")
        else:
            log.debug(f"Role '{role_name}' already exists, updating")

        role.display_name = role_config["display_name"]
        role.description = role_config["description"]
        role.hierarchy_level = role_config["hierarchy_level"]
        role.can_manage = role_config["can_manage"]
        role.permissions = role_config["permissions"]
        role.is_system = True

    await db.commit()
    log.info("Default roles created successfully")
    return created


async def main():
    """Main function to seed roles."""
    log.info("Starting role seeding...")

    # Initialize database tables first
    log.info("Initializing database tables...")
    await init_db()

    async with AsyncSessionLocal() as db:
        try:
            created = await seed_roles(db)
        except Exception as e:
            log.error(f"Error seeding roles: {e}", exc_info=True)
            await db.rollback()
            raise

    log.info(f"Role seeding completed successfully ({created} new)")
    log.info("")
    log.info("Default roles:")
    for role_name, role_config in DEFAULT_ROLES.items():
        log.info(f"  - {role_name} (level {role_config['hierarchy_level']}): {role_config['description']}")


if __name__ == "__main__":
    asyncio.run(main())
