#!/usr/bin/env python3
"""Print the SQL that grants a directory operator role to a Supabase user."""

from __future__ import annotations

import argparse

ROLES = ("user", "moderator", "admin")


def _literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def render_grant_sql(*, role: str, user_id: str | None, email: str | None, granted_by: str) -> str:
    if role not in ROLES:
        raise ValueError(f"role must be one of {', '.join(ROLES)}")
    if bool(user_id) == bool(email):
        raise ValueError("exactly one of user_id or email is required")

    if user_id:
        match_clause = f"id = {_literal(user_id)}::uuid"
        subject = user_id
    else:
        match_clause = f"lower(email) = lower({_literal(email)})"
        subject = email

    return f"""-- Grant the {role} role; run in a privileged session on the Supabase database.
begin;

update auth.users
set raw_app_meta_data = coalesce(raw_app_meta_data, '{{}}'::jsonb) || jsonb_build_object('role', {_literal(role)})
where {match_clause};

insert into pipeline_events (entity_type, entity_id, event_type, actor_type, actor_id, payload)
values ('operator', {_literal(subject)}, 'role_granted', 'operator', {_literal(granted_by)}, jsonb_build_object('role', {_literal(role)}));

commit;
"""


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--role", choices=ROLES, default="moderator")
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--user-id", help="auth.users id")
    target.add_argument("--email", help="auth.users email")
    parser.add_argument("--granted-by", default="cli", help="recorded as the event actor")
    args = parser.parse_args()

    print(render_grant_sql(role=args.role, user_id=args.user_id, email=args.email, granted_by=args.granted_by))


if __name__ == "__main__":
    main()
