from __future__ import annotations

import argparse
import asyncio
import sys

from relayq.persistence.db import SessionLocal
from relayq.services.audit import record_event
from relayq.services.channels import CHANNELS
from relayq.services.settings_store import upsert_tenant_settings
from relayq.services.templates import seed_default_templates


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Seed built-in templates (and optionally settings) for a tenant")
    parser.add_argument("--tenant", required=True, help="Tenant identifier")
    parser.add_argument("--channel", default="sms", choices=sorted(CHANNELS), help="Channel to seed")
    parser.add_argument("--sender-id", default=None, help="Sender phone number or from address")
    parser.add_argument("--enable", action="store_true", help="Enable the channel for the tenant")
    return parser


async def _seed(args: argparse.Namespace) -> int:
    async with SessionLocal() as session:
        rows = await seed_default_templates(session=session, tenant_id=args.tenant, channel=args.channel)
        fields: dict[str, object] = {}
        if args.sender_id:
            fields["sender_id"] = args.sender_id
        if args.enable:
            fields["enabled"] = True
        if fields:
            await upsert_tenant_settings(session=session, tenant_id=args.tenant, channel=args.channel, **fields)
        await record_event(
            session=session,
            tenant_id=args.tenant,
            actor_type="system",
            actor_id="seed_templates",
            event_type="templates.seeded",
            outcome="success",
            resource_type="template",
            metadata={"channel": args.channel, "count": len(rows), "settings_fields": sorted(fields)},
            commit=True,
            best_effort=False,
        )

    print(f"Seeded {len(rows)} {args.channel} templates for tenant {args.tenant}")
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_seed(args))
    except Exception as exc:  # noqa: BLE001 - surface provisioning failures clearly
        print(f"seed_templates failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
