import argparse
import asyncio

from sqlalchemy import select

from vibecart import seeds as app_seeds
from vibecart.core import security
from vibecart.db.session import SessionLocal
from vibecart.models.user import User, UserRole


async def _seed_data() -> None:
    async with SessionLocal() as session:
        await app_seeds.seed(session)
    print("Seed completed")


async def bootstrap_admin(*, email: str, name: str | None) -> None:
    """Create the admin account (or promote an existing user) and print an access token."""
    email = email.strip().lower()
    async with SessionLocal() as session:
        user = (await session.execute(select(User).where(User.email == email))).scalar_one_or_none()
        if user is None:
            user = User(email=email, name=name, role=UserRole.admin)
            session.add(user)
        else:
            user.role = UserRole.admin
            if name:
                user.name = name
        await session.commit()
        await session.refresh(user)
    print(f"Admin ready: {user.email} ({user.id})")
    print(security.create_access_token(str(user.id)))


async def issue_token(*, email: str) -> None:
    async with SessionLocal() as session:
        user = (
            await session.execute(select(User).where(User.email == email.strip().lower()))
        ).scalar_one_or_none()
    if user is None:
        raise SystemExit(f"No user with email {email}")
    print(security.create_access_token(str(user.id)))


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="VibeCart maintenance utilities")
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("seed-data", help="Seed a demo catalog and the VIBE10 coupon")

    admin = subparsers.add_parser("bootstrap-admin", help="Create or promote an admin account")
    admin.add_argument("--email", required=True, help="Admin email")
    admin.add_argument("--name", help="Admin display name")

    token = subparsers.add_parser("issue-token", help="Print an access token for an existing user")
    token.add_argument("--email", required=True, help="User email")
    return parser


def _run_cli_command(args: argparse.Namespace) -> bool:
    if args.command == "seed-data":
        asyncio.run(_seed_data())
        return True

    if args.command == "bootstrap-admin":
        asyncio.run(bootstrap_admin(email=args.email, name=args.name))
        return True

    if args.command == "issue-token":
        asyncio.run(issue_token(email=args.email))
        return True

    return False


def main():
    parser = _build_parser()
    args = parser.parse_args()
    if not _run_cli_command(args):
        parser.print_help()


if __name__ == "__main__":
    main()
