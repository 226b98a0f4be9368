from __future__ import annotations

import argparse
import json

from sqlalchemy import select

from .auth_models import Organization, User, UserOrganization
from .auth_service import register_organization
from .config import configure_logging
from .db import db_session
from .messaging import list_messages, resend_message, send_due_appointment_reminders
from .models import MessageStatus, Patient, TreatmentType
from .pricing import load_variants, quote_treatment, validate_variants
from .seed import seed_base, seed_catalog_for
from .services import init_db
from .teeth import format_tooth_numbers


def _teeth(raw: str) -> list[int]:
    # "11,12,13" or "11 12 13"
    return [int(x) for x in raw.replace(",", " ").split()]


def cmd_init(args: argparse.Namespace) -> None:
    init_db()
    if not args.no_seed:
        seed_base()
    print("Database initialized" + ("." if args.no_seed else " and demo data seeded."))


def cmd_create_org(args: argparse.Namespace) -> None:
    org_id, user_id = register_organization(args.name, args.admin_email, args.admin_name, args.admin_password,
                                            location=args.location, phone=args.phone)
    if not args.empty:
        seed_catalog_for(org_id)
    print(f"Organization created: {org_id}")
    print(f"Admin user: {user_id}")


def cmd_list(args: argparse.Namespace) -> None:
    with db_session() as s:
        if args.entity == "organizations":
            for o in s.scalars(select(Organization).order_by(Organization.name)):
                print(f"{o.id} | {o.name} | {'active' if o.is_active else 'inactive'}")
        elif args.entity == "users":
            rows = s.execute(
                select(User.email, User.name, UserOrganization.role, Organization.name.label("org"))
                .join(UserOrganization, UserOrganization.user_id == User.id)
                .join(Organization, Organization.id == UserOrganization.org_id)
                .order_by(Organization.name, User.name)
            ).all()
            for r in rows:
                print(f"{r.org} | {r.name} <{r.email}> | {r.role.value}")
        elif args.entity == "patients":
            q = select(Patient).where(Patient.deleted_at.is_(None))
            if args.org:
                q = q.where(Patient.org_id == args.org)
            for p in s.scalars(q.order_by(Patient.last_name, Patient.first_name)):
                print(f"{p.id} | {p.full_name} | {p.mobile_number}")
        elif args.entity == "treatment-types":
            q = select(TreatmentType).where(TreatmentType.deleted_at.is_(None))
            if args.org:
                q = q.where(TreatmentType.org_id == args.org)
            for t in s.scalars(q.order_by(TreatmentType.name)):
                prices = ", ".join(
                    f"{v.name}={v.price}" + (" (default)" if v.is_default else f" [{format_tooth_numbers(v.tooth_numbers)}]")
                    for v in load_variants(t.price_variants)
                )
                print(f"{t.id} | {t.name} ({t.duration_minutes} min) | {prices}")


def cmd_quote(args: argparse.Namespace) -> None:
    """Quote from a JSON list of price variants, without touching the database."""
    with open(args.variants, encoding="utf-8") as f:
        variants = validate_variants(load_variants(json.load(f)))
    quote = quote_treatment(
        variants,
        _teeth(args.teeth),
        discount_amount=args.discount,
        discount_percent=args.percent,
        strict=args.strict,
    )
    for tooth, price in quote.tooth_prices:
        print(f"  tooth {tooth}: {price}")
    print(f"Teeth:    {format_tooth_numbers(t for t, _ in quote.tooth_prices)}")
    print(f"Total:    {quote.total_price}")
    print(f"Discount: {quote.discount} ({quote.discount_percent}%)")
    print(f"Due:      {quote.amount_due}")


def cmd_format_teeth(args: argparse.Namespace) -> None:
    print(format_tooth_numbers(_teeth(args.teeth)))


def cmd_reminders(args: argparse.Namespace) -> None:
    """
    Appointment reminders for the next N hours (run it from cron):
    - one WhatsApp message per appointment
    - appointments already reminded are skipped
    """
    sent = send_due_appointment_reminders(within_hours=args.hours)
    if not sent:
        print("No appointments to remind.")
        return
    for m in sent:
        print(f"[{m['status']}] {m['patient_name']} | {m['content']}" + (f" | {m['error']}" if m["error"] else ""))


def cmd_messages(args: argparse.Namespace) -> None:
    status = MessageStatus(args.status) if args.status else None
    page = list_messages(args.org, status=status, limit=args.limit)
    if not page["data"]:
        print("No messages.")
        return

    for m in page["data"]:
        print(f"{m['id']} | {m['type']} | {m['status']} | {m['patient_name']} | {m['error'] or '-'}")
        if args.resend and m["status"] == MessageStatus.FAILED.value:
            r = resend_message(args.org, m["id"])
            print(f"  resend -> {r['status']}" + (f" ({r['error']})" if r["error"] else ""))


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="dental_clinic_cli", description="Dental clinic CLI (maintenance and scheduled jobs)")
    p.add_argument("--log-level", default=None)
    sub = p.add_subparsers(required=True)

    p_init = sub.add_parser("init", help="Create the database and seed demo data")
    p_init.add_argument("--no-seed", action="store_true")
    p_init.set_defaults(func=cmd_init)

    p_org = sub.add_parser("create-org", help="Create an organization with its first admin")
    p_org.add_argument("--name", required=True)
    p_org.add_argument("--admin-email", required=True)
    p_org.add_argument("--admin-name", required=True)
    p_org.add_argument("--admin-password", required=True)
    p_org.add_argument("--location", default=None)
    p_org.add_argument("--phone", default=None)
    p_org.add_argument("--empty", action="store_true", help="Do not create the default treatment catalog")
    p_org.set_defaults(func=cmd_create_org)

    p_list = sub.add_parser("list", help="List entities")
    p_list.add_argument("entity", choices=["organizations", "users", "patients", "treatment-types"])
    p_list.add_argument("--org", default=None, help="Organization id filter")
    p_list.set_defaults(func=cmd_list)

    p_quote = sub.add_parser("quote", help="Price a tooth selection")
    p_quote.add_argument("--variants", required=True, help="JSON file with the price variants")
    p_quote.add_argument("--teeth", required=True, help="e.g. 11,12,21")
    p_quote.add_argument("--discount", default=None, help="Discount amount")
    p_quote.add_argument("--percent", default=None, help="Discount percentage")
    p_quote.add_argument("--strict", action="store_true", help="Fail on teeth without a price rule")
    p_quote.set_defaults(func=cmd_quote)

    p_fmt = sub.add_parser("format-teeth", help="Compact tooth label, e.g. 11-13, 15")
    p_fmt.add_argument("teeth")
    p_fmt.set_defaults(func=cmd_format_teeth)

    p_rem = sub.add_parser("reminders", help="Send appointment reminders")
    p_rem.add_argument("--hours", type=int, default=24)
    p_rem.set_defaults(func=cmd_reminders)

    p_msg = sub.add_parser("messages", help="List messages of an organization, optionally resend failed ones")
    p_msg.add_argument("--org", required=True)
    p_msg.add_argument("--status", choices=[s.value for s in MessageStatus], default=None)
    p_msg.add_argument("--limit", type=int, default=50)
    p_msg.add_argument("--resend", action="store_true", help="Resend the failed messages listed")
    p_msg.set_defaults(func=cmd_messages)

    return p


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level)
    init_db()  # tables always present
    args.func(args)


if __name__ == "__main__":
    main()
