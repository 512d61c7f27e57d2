#!/usr/bin/env python3
"""Print how a permission resolves for one role at one account or course, bypassing caches.

Usage:
    python scripts/explain_permission.py --account <global id> --permission read_forum --role <global id>
    python scripts/explain_permission.py --course <global id> --permission read_forum --role <global id> \
        --role-context-account <global id>

Connects to the shards configured by DATABASE_URL / SHARD_DATABASE_URLS.
"""
import os
import sys
sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), 'backend'))

import argparse
import asyncio
import json

from role_overrides.db.database import get_router
from role_overrides.permissions.service import get_role_override_service


async def explain(args) -> int:
    service = get_role_override_service()
    store = service.store

    if args.course is not None:
        context = await store.get_course(args.course)
    else:
        context = await store.get_account(args.account)
    if context is None:
        print('Context not found', file=sys.stderr)
        return 1

    role = await store.get_role(args.role)
    if role is None:
        print(f'Role {args.role} not found', file=sys.stderr)
        return 1

    role_context = None
    if args.role_context_account is not None:
        role_context = await store.get_account(args.role_context_account)

    chain = await service.tree.ancestor_chain(context)
    print('Chain:', ' > '.join(f'{n.name} ({n.id})' for n in chain) or '(empty)')

    result = await service.permission_for(context, args.permission, role, role_context, no_caching=True)
    print(json.dumps(result.as_dict(), indent=2, default=str))
    print('Grantable here:', result.is_grantable)

    await get_router().dispose()
    return 0


def main():
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument('--account', type=int)
    target.add_argument('--course', type=int)
    parser.add_argument('--permission', required=True)
    parser.add_argument('--role', type=int, required=True)
    parser.add_argument('--role-context-account', type=int, required=False)
    args = parser.parse_args()

    sys.exit(asyncio.run(explain(args)))


if __name__ == '__main__':
    main()
