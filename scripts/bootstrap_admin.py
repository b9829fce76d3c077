#!/usr/bin/env python3
"""Emit SQL that grants a Supabase user a craftmatch role and records the change."""

from __future__ import annotations

import argparse

ROLES = ("user", "agency_owner", "admin")


def _quote_sql(value: str) -> str:
    escaped = value.replace("'", "''")
    return f"'{escaped}'"


def _target_filters(*, user_id: str | None, email: str | None) -> tuple[str, str]:
    """Return the auth.users and profiles where-clauses for exactly one of user id or email."""
    if bool(user_id) == bool(email):
        raise ValueError("exactly one of user_id or email is required")
    if user_id:
        target = f"{_quote_sql(user_id)}::uuid"
        return f"id = {target}", f"p.id = {target}"
    target = _quote_sql(email)
    return f"email = {target}", f"p.email = {target}"


def render_sql(*, role: str, user_id: str | None, email: str | None, actor: str, notes: str | None = None) -> str:
    if role not in ROLES:
        raise ValueError(f"role must be one of: {', '.join(ROLES)}")

    role_value = _quote_sql(role)
    actor_value = _quote_sql(actor)
    notes_value = _quote_sql(notes) if notes else "null"

    auth_where, profile_where = _target_filters(user_id=user_id, email=email)

    return f"""-- craftmatch role bootstrap SQL
-- Needs a session that can write auth.users (Supabase SQL editor or service role).

begin;

insert into role_change_audit (user_id, user_email, old_role, new_role, actor, notes)
select u.id, u.email, p.role, {role_value}, {actor_value}, {notes_value}
from auth.users u
left join profiles p on p.id = u.id
where u.{auth_where};

update auth.users
set raw_app_meta_data = coalesce(raw_app_meta_data, '{{}}'::jsonb) || jsonb_build_object('role', {role_value})
where {auth_where};

update profiles p
set role = {role_value}, updated_at = now()
where {profile_where};

commit;
"""


def main() -> None:
    parser = argparse.ArgumentParser(description="Emit SQL to bootstrap a craftmatch user role.")
    parser.add_argument(
        "--role",
        choices=list(ROLES),
        default="admin",
        help="Role to assign in auth.users.raw_app_meta_data.role and profiles.role",
    )
    identity_group = parser.add_mutually_exclusive_group(required=True)
    identity_group.add_argument("--user-id", help="Supabase auth.users id (UUID)")
    identity_group.add_argument("--email", help="Supabase auth.users email")
    parser.add_argument(
        "--actor",
        default="system",
        help="Actor label recorded in role_change_audit",
    )
    parser.add_argument("--notes", default=None, help="Free-form reason recorded with the change")
    args = parser.parse_args()

    print(
        render_sql(
            role=args.role,
            user_id=args.user_id,
            email=args.email,
            actor=args.actor,
            notes=args.notes,
        )
    )


if __name__ == "__main__":
    main()
