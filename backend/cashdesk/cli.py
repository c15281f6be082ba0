# Overview: Flask CLI command groups for register bootstrap, session inspection and Z reports.

# backend/cashdesk/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# Registers:
# - python -m flask registers create --company acme --code REG-01 --name "Front Counter 1" --location "Main Floor"
#   Create a new register (add --journal-cash-sales to ledger cash tickets).
# - python -m flask registers list [--company acme] [--all]
#   List registers with their open session.
#
# Sessions:
# - python -m flask sessions list --register-id 1 --status open --limit 20
#   List recent sessions with expected/counted/difference figures.
#
# Reports:
# - python -m flask reports z --register-id 1 --date 2024-05-01
#   Generate (or show the already locked) Z report for a register and day.
# - python -m flask reports verify --register-id 1
#   Recompute the Z report hash chain of a register.
# - python -m flask reports verify-credit-notes --company acme --year 2026
#   Recompute the credit note hash chain of a company for a year.

import click
from flask.cli import with_appcontext

from .errors import CashdeskError
from .models.registers import SESSION_STATUSES
from .time_utils import parse_iso_date


def _money(cents) -> str:
    if cents is None:
        return "-"
    return f"{cents / 100:.2f}"


# =============================================================================
# REGISTERS
# =============================================================================

@click.group('registers')
def registers_group():
    """Register inspection and bootstrap commands."""


@registers_group.command('create')
@click.option('--company', 'company_id', required=True, help='Company identifier')
@click.option('--code', required=True, help='Register code (e.g., REG-01)')
@click.option('--name', required=True, help='Register name')
@click.option('--location', help='Location in store')
@click.option('--journal-cash-sales', is_flag=True, help='Write cash POS tickets into the ledger')
@with_appcontext
def create_register_cli(company_id, code, name, location, journal_cash_sales):
    """
    Create a new register.

    Example:
        flask registers create --company acme --code REG-01 --name "Front Counter 1"
    """
    from .services import register_service

    try:
        register = register_service.create_register(
            company_id=company_id,
            code=code,
            name=name,
            location=location,
            journal_cash_sales=journal_cash_sales,
            actor="cli",
        )

        click.echo(f"PASS Created register: {register.code} - {register.name}")
        click.echo(f"   Company: {register.company_id}")
        click.echo(f"   Location: {register.location or 'Not specified'}")
        click.echo(f"   Register ID: {register.id}")

    except CashdeskError as e:
        click.echo(f"FAIL Error: {e.message}")
        raise SystemExit(1)


@registers_group.command('list')
@click.option('--company', 'company_id', help='Filter by company')
@click.option('--all', 'show_all', is_flag=True, help='Show inactive registers too')
@with_appcontext
def list_registers_cli(company_id, show_all):
    """
    List registers.

    Example:
        flask registers list
        flask registers list --company acme --all
    """
    from .services import register_service, session_service

    registers = register_service.list_registers(company_id, include_inactive=show_all)

    if not registers:
        click.echo("No registers found.")
        return

    click.echo("\n" + "="*90)
    click.echo(f"{'ID':<5} {'Code':<12} {'Name':<25} {'Company':<15} {'Active':<8} {'Session'}")
    click.echo("="*90)

    for register in registers:
        open_session = session_service.get_open_session(register.id)
        status = f"OPEN #{open_session.id}" if open_session else "-"
        active = "Yes" if register.is_active else "No"
        click.echo(
            f"{register.id:<5} {register.code:<12} {register.name[:25]:<25} "
            f"{register.company_id[:15]:<15} {active:<8} {status}"
        )

    click.echo("="*90 + "\n")


# =============================================================================
# SESSIONS
# =============================================================================

@click.group('sessions')
def sessions_group():
    """Cash session inspection commands."""


@sessions_group.command('list')
@click.option('--register-id', type=int, help='Filter by register ID')
@click.option('--status', type=click.Choice(list(SESSION_STATUSES)), help='Filter by status')
@click.option('--limit', type=int, default=20, help='Max sessions to show')
@with_appcontext
def list_sessions_cli(register_id, status, limit):
    """
    List cash sessions, newest first.

    Example:
        flask sessions list --register-id 1 --status closed
    """
    from .services import session_service

    sessions, total = session_service.list_sessions(register_id=register_id, status=status, limit=limit)

    if not sessions:
        click.echo("No sessions found.")
        return

    click.echo("\n" + "="*110)
    click.echo(
        f"{'ID':<6} {'Register':<9} {'Opened by':<15} {'Status':<9} {'Opened':<21} "
        f"{'Expected':>10} {'Counted':>10} {'Diff':>9}"
    )
    click.echo("="*110)

    for session in sessions:
        expected = session.expected_cash_cents
        if session.is_open:
            expected = session_service.compute_expected_cash(session.id)
        opened = session.opened_at.strftime("%Y-%m-%d %H:%M:%S") if session.opened_at else "-"
        click.echo(
            f"{session.id:<6} {session.register_id:<9} {session.opened_by[:15]:<15} {session.status:<9} "
            f"{opened:<21} {_money(expected):>10} {_money(session.counted_cash_cents):>10} "
            f"{_money(session.cash_difference_cents):>9}"
        )

    click.echo("="*110)
    click.echo(f"Showing {len(sessions)} of {total} session(s)\n")


# =============================================================================
# REPORTS
# =============================================================================

@click.group('reports')
def reports_group():
    """Z report and document chain commands."""


@reports_group.command('z')
@click.option('--register-id', type=int, required=True, help='Register ID')
@click.option('--date', 'report_date', required=True, help='Day to lock (YYYY-MM-DD)')
@with_appcontext
def z_report_cli(register_id, report_date):
    """
    Generate the Z report of a register for a day (idempotent).

    Example:
        flask reports z --register-id 1 --date 2024-05-01
    """
    from .services import report_service

    try:
        day = parse_iso_date(report_date)
    except ValueError:
        raise click.BadParameter("date must be YYYY-MM-DD", param_hint="--date")

    try:
        report = report_service.generate_z_report(register_id, day, actor="cli")
    except CashdeskError as e:
        click.echo(f"FAIL Error: {e.message}")
        raise SystemExit(1)

    totals = report["daily_totals"]
    click.echo(f"PASS Z report {report['number']} ({report['date']})")
    click.echo(f"   Sessions: {totals['sessions_count']}")
    click.echo(f"   Invoices: {totals['invoice_count']}  Total TTC: {_money(totals['total_ttc_cents'])}")
    click.echo(f"   Total HT: {_money(totals['total_ht_cents'])}  Total TVA: {_money(totals['total_tva_cents'])}")
    for rate, amounts in sorted((totals["vat_breakdown"] or {}).items()):
        click.echo(f"     VAT {rate:<9} HT {_money(amounts['ht_cents']):>10}  TVA {_money(amounts['tva_cents']):>10}")
    for method, amount in sorted(totals["by_method"].items()):
        click.echo(f"     {method:<10} {_money(amount):>12}")
    click.echo(f"   Refunds: {totals['refund_count']}  Total: {_money(totals['refund_total_cents'])}")
    click.echo(f"   Cash difference: {_money(totals['total_cash_difference_cents'])}")
    click.echo(f"   Hash: {report['hash']}")


@reports_group.command('verify')
@click.option('--register-id', type=int, required=True, help='Register ID')
@with_appcontext
def verify_z_chain_cli(register_id):
    """
    Verify the Z report hash chain of a register.

    Example:
        flask reports verify --register-id 1
    """
    from .services import report_service

    result = report_service.verify_z_chain(register_id)
    if result["valid"]:
        click.echo(f"PASS {result['checked']} Z report(s) verified for register {register_id}")
        return

    click.echo(
        f"FAIL Chain broken at sequence {result['broken_at']} ({result['reason']}) "
        f"for register {register_id}"
    )
    raise SystemExit(1)


@reports_group.command('verify-credit-notes')
@click.option('--company', 'company_id', help='Company identifier (omit for register-less invoices)')
@click.option('--year', type=int, required=True, help='Chain year')
@with_appcontext
def verify_credit_note_chain_cli(company_id, year):
    """
    Verify the credit note hash chain of a company for a year.

    Example:
        flask reports verify-credit-notes --company acme --year 2026
    """
    from .services import refund_service

    result = refund_service.verify_credit_note_chain(company_id, year)
    if result["valid"]:
        click.echo(f"PASS {result['checked']} credit note(s) verified in chain {result['chain_scope']}")
        return

    click.echo(
        f"FAIL Chain {result['chain_scope']} broken at sequence {result['broken_at']} ({result['reason']})"
    )
    raise SystemExit(1)


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(registers_group)
    app.cli.add_command(sessions_group)
    app.cli.add_command(reports_group)
