from __future__ import annotations

import asyncio
import dataclasses
import logging
import uuid
from collections.abc import Coroutine
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TypeVar

import typer
from rich import print, print_json
from rich.markup import escape

from mailbridge.config import Settings
from mailbridge.core.credentials import (
    BackendKind,
    CredentialStore,
    GoogleTokenRefresher,
    JsonFileCredentialPersistence,
    MicrosoftTokenRefresher,
    TokenRefresher,
)
from mailbridge.core.logging import configure_logging, get_logger
from mailbridge.core.replies import ReplyMode, ReplyPlan, build_reply_plan
from mailbridge.errors import CredentialError, MailbridgeError, NotFoundError
from mailbridge.services import (
    DispatchResult,
    DraftAggregationService,
    LiveSessionProvider,
    ProviderResolver,
    ReplyDispatcher,
    SourceFailure,
    draft_sources_for,
    filter_drafts,
    run_doctor_checks,
)
from mailbridge.sources.desktop import CdpBridge
from mailbridge.sources.email_gmail import GmailOAuthBootstrap
from mailbridge.sources.models import Draft, DraftSource, DraftUpdate

T = TypeVar("T")

app = typer.Typer(no_args_is_help=True, help="mailbridge: drafts, replies and tokens for the desktop mail client")
auth_app = typer.Typer(no_args_is_help=True, help="Credential bootstrap and cleanup")
drafts_app = typer.Typer(no_args_is_help=True, help="Drafts across Gmail/Outlook and the client's native drafts")
app.add_typer(auth_app, name="auth")
app.add_typer(drafts_app, name="drafts")

AccountOption = typer.Option(None, "--account", "-a", help="Account email (default: MAILBRIDGE_ACCOUNT or first cached)")
PortOption = typer.Option(None, "--port", help="Remote debugging port of the desktop client")


@dataclass(slots=True)
class Runtime:
    settings: Settings
    store: CredentialStore
    resolver: ProviderResolver
    bridge: CdpBridge
    logger: logging.LoggerAdapter


def _load_settings(base_dir: Path | None = None) -> Settings:
    settings = Settings.load(base_dir=base_dir)
    settings.ensure_directories()
    return settings


def _refreshers(settings: Settings, logger: logging.LoggerAdapter) -> dict[BackendKind, TokenRefresher]:
    client_id, client_secret = settings.google_client_id, settings.google_client_secret
    if not (client_id and client_secret) and settings.google_client_secret_path.exists():
        try:
            client_id, client_secret = GmailOAuthBootstrap(settings.google_client_secret_path).client_credentials()
        except ValueError as exc:
            logger.warning("Google OAuth client file unreadable: %s", exc)

    refreshers: dict[BackendKind, TokenRefresher] = {
        BackendKind.GOOGLE: GoogleTokenRefresher(client_id, client_secret),
        BackendKind.MICROSOFT: MicrosoftTokenRefresher(settings.microsoft_client_id, settings.microsoft_tenant),
    }
    return refreshers


def _runtime(name: str) -> Runtime:
    correlation_id = uuid.uuid4().hex
    settings = _load_settings()
    configure_logging(settings.logs_dir, correlation_id=correlation_id)
    logger = get_logger(f"mailbridge.{name}", correlation_id)

    store = CredentialStore(
        JsonFileCredentialPersistence(settings.credentials_path),
        refreshers=_refreshers(settings, logger),
    )
    try:
        store.load()
    except ValueError as exc:
        logger.warning("Credential cache ignored: %s", exc)

    bridge = CdpBridge(
        settings.target_url_match,
        executable=str(settings.client_executable),
        timeout=settings.http_timeout_sec,
    )
    resolver = ProviderResolver(settings, store, bridge, logger=logger)
    return Runtime(settings=settings, store=store, resolver=resolver, bridge=bridge, logger=logger)


def _execute(coro: Coroutine[Any, Any, T]) -> T:
    try:
        return asyncio.run(coro)
    except CredentialError as exc:
        print(f"[red]Credential error[/red]: {escape(str(exc))}")
        print("Re-authenticate with `mailbridge auth google` or `mailbridge auth extract <email>`.")
        raise typer.Exit(2) from exc
    except NotFoundError as exc:
        print(f"[red]Not found[/red]: {escape(str(exc))}")
        raise typer.Exit(1) from exc
    except MailbridgeError as exc:
        print(f"[red]{exc.__class__.__name__}[/red]: {escape(str(exc))}")
        raise typer.Exit(1) from exc


def _split(value: str | None) -> list[str] | None:
    if value is None:
        return None
    return [item.strip() for item in value.split(",") if item.strip()]


@auth_app.command("extract")
def auth_extract_command(
    email: str = typer.Argument(..., help="Account to read from the running client"),
    port: int | None = PortOption,
) -> None:
    """Copy an account's token out of the running desktop client into the cache."""
    runtime = _runtime("auth")

    async def run() -> None:
        provider = await runtime.resolver.live_session(email, port)
        try:
            record = await provider.session.extract_credential(email)
            current = runtime.store.peek(email)
            if current is not None and current.refresh_token and current.backend_kind is record.backend_kind:
                record = dataclasses.replace(record, refresh_token=current.refresh_token)
            record = runtime.store.put(record)
        finally:
            await provider.disconnect()
        kind = "outlook" if record.is_microsoft else "gmail"
        print(f"[green]Token cached[/green]: {record.account_email} ({kind}, expires {record.expires_at.isoformat()})")

    _execute(run())


@auth_app.command("google")
def auth_google_command(
    email: str | None = typer.Option(None, help="Fail unless this account signs in"),
) -> None:
    """Installed-app OAuth flow; stores a refreshable Gmail credential."""
    runtime = _runtime("auth")
    bootstrap = GmailOAuthBootstrap(runtime.settings.google_client_secret_path)
    try:
        record = bootstrap.run(expected_email=email)
    except (FileNotFoundError, ValueError) as exc:
        print(f"[red]Google OAuth error[/red]: {escape(str(exc))}")
        raise typer.Exit(2) from exc
    record = runtime.store.put(record)
    print(f"[green]Google OAuth OK[/green]: {record.account_email}")


@auth_app.command("forget")
def auth_forget_command(email: str = typer.Argument(..., help="Account to drop from the cache")) -> None:
    runtime = _runtime("auth")
    if runtime.store.forget(email):
        print(f"[green]Forgot[/green] {email}")
    else:
        print(f"[yellow]No cached credential for[/yellow] {email}")


@app.command("accounts")
def accounts_command(
    live: bool = typer.Option(False, "--live", help="Ask the running client for its linked accounts"),
    port: int | None = PortOption,
) -> None:
    runtime = _runtime("accounts")

    if not live:
        emails = runtime.store.accounts()
        if not emails:
            print("[yellow]No cached accounts[/yellow]. Try `mailbridge accounts --live`.")
        for email in emails:
            record = runtime.store.peek(email)
            kind = "outlook" if record.is_microsoft else "gmail"
            state = "fresh" if runtime.store.is_fresh(record) else ("refreshable" if record.refresh_token else "stale")
            print(f"- {email} ({kind}, {state})")
        return

    async def run() -> None:
        provider = await runtime.resolver.live_session(port=port)
        try:
            accounts = await provider.session.list_accounts()
        finally:
            await provider.disconnect()
        for account in accounts:
            marker = " [green](current)[/green]" if account.is_current else ""
            print(f"- {escape(account.email)}{marker}")

    _execute(run())


@drafts_app.command("list")
def drafts_list_command(
    account: str | None = AccountOption,
    limit: int = typer.Option(50, min=1, help="Drafts per source"),
    offset: int = typer.Option(0, min=0),
    to: str | None = typer.Option(None, help="Only drafts with a recipient containing this text"),
    subject: str | None = typer.Option(None, help="Only drafts whose subject contains this text"),
    as_json: bool = typer.Option(False, "--json", help="Print JSON"),
) -> None:
    runtime = _runtime("drafts")

    async def run() -> tuple[list[Draft], list[SourceFailure]]:
        provider = await runtime.resolver.resolve(account)
        try:
            service = DraftAggregationService(
                await draft_sources_for(provider, account, runtime.settings),
                logger=runtime.logger,
            )
            drafts = await service.list_drafts(limit=limit, offset=offset)
        finally:
            await provider.disconnect()
        return filter_drafts(drafts, to=to, subject=subject), service.last_failures

    drafts, failures = _execute(run())
    if as_json:
        print_json(data=[draft.to_dict() for draft in drafts])
        return

    for failure in failures:
        print(f"[yellow]{failure.source.value} unavailable[/yellow]: {escape(str(failure.error))}")
    if not drafts:
        print("No drafts")
    for draft in drafts:
        recipients = ", ".join(draft.to) or "(no recipients)"
        print(f"- {escape(draft.id)} ({draft.source.value}) {escape(draft.subject)} -> {escape(recipients)}")


@drafts_app.command("update")
def drafts_update_command(
    draft_id: str = typer.Argument(...),
    subject: str | None = typer.Option(None),
    to: str | None = typer.Option(None, help="Comma-separated recipients (replaces the current list)"),
    body: str | None = typer.Option(None),
    source: str | None = typer.Option(None, help="gmail|outlook|native (default: detect)"),
    account: str | None = AccountOption,
) -> None:
    updates = DraftUpdate(subject=subject, to=_split(to), body=body)
    if updates == DraftUpdate():
        raise typer.BadParameter("Nothing to update: pass --subject, --to or --body")
    source_kind = _parse_source(source)
    runtime = _runtime("drafts")

    async def run() -> Draft:
        provider = await runtime.resolver.resolve(account)
        try:
            service = DraftAggregationService(
                await draft_sources_for(provider, account, runtime.settings),
                logger=runtime.logger,
            )
            return await service.update_draft(draft_id, updates, source=source_kind)
        finally:
            await provider.disconnect()

    draft = _execute(run())
    print(f"[green]Draft updated[/green]: {escape(draft.id)} ({draft.source.value}) {escape(draft.subject)}")


@drafts_app.command("delete")
def drafts_delete_command(
    draft_id: str = typer.Argument(...),
    source: str | None = typer.Option(None, help="gmail|outlook|native (default: detect)"),
    account: str | None = AccountOption,
) -> None:
    source_kind = _parse_source(source)
    runtime = _runtime("drafts")

    async def run() -> None:
        provider = await runtime.resolver.resolve(account)
        try:
            service = DraftAggregationService(
                await draft_sources_for(provider, account, runtime.settings),
                logger=runtime.logger,
            )
            await service.delete_draft(draft_id, source=source_kind)
        finally:
            await provider.disconnect()

    _execute(run())
    print(f"[green]Draft deleted[/green]: {escape(draft_id)}")


def _parse_source(value: str | None) -> DraftSource | None:
    if value is None:
        return None
    try:
        return DraftSource(value.strip().lower())
    except ValueError as exc:
        raise typer.BadParameter(f"Unknown source: {value}") from exc


async def _reply_flow(
    runtime: Runtime,
    thread_id: str,
    mode: ReplyMode,
    body: str | None,
    *,
    send: bool = False,
    explicit_to: list[str] | None = None,
    account: str | None = None,
    dispatch: bool = True,
) -> tuple[ReplyPlan, DispatchResult | None]:
    provider = await runtime.resolver.resolve(account)
    try:
        record = await provider.get_token(account)
        dispatcher = ReplyDispatcher(record)
        try:
            snapshot = await dispatcher.snapshot_for(thread_id)
        except NotFoundError:
            if not isinstance(provider, LiveSessionProvider):
                raise
            runtime.logger.info("Thread %s not found via API, reading it from the live client", thread_id)
            snapshot = await provider.session.thread_snapshot(thread_id)

        plan = build_reply_plan(snapshot, mode, explicit_to)
        runtime.logger.info("Planned %s for thread %s: to=%s cc=%s", mode.value, thread_id, plan.to, plan.cc)
        if not dispatch:
            return plan, None
        result = await dispatcher.dispatch(snapshot, plan, body or "", send=send)
    finally:
        await provider.disconnect()
    return plan, result


def _print_dispatch(plan: ReplyPlan, result: DispatchResult) -> None:
    verb = "Sent" if result.action == "sent" else "Draft saved"
    print(f"[green]{verb}[/green] via {result.backend}: {escape(plan.subject)}")
    print(f"- to: {escape(', '.join(plan.to))}")
    if plan.cc:
        print(f"- cc: {escape(', '.join(plan.cc))}")
    print(f"- id: {escape(result.message_id or '-')}, thread: {escape(result.thread_id or '-')}")


@app.command("reply")
def reply_command(
    thread_id: str = typer.Argument(...),
    body: str = typer.Option(..., help="Reply text (plain text or HTML)"),
    reply_all: bool = typer.Option(False, "--all", help="Reply to everyone on the thread"),
    send: bool = typer.Option(False, "--send", help="Send now instead of saving a draft"),
    account: str | None = AccountOption,
) -> None:
    runtime = _runtime("reply")
    mode = ReplyMode.REPLY_ALL if reply_all else ReplyMode.REPLY
    plan, result = _execute(_reply_flow(runtime, thread_id, mode, body, send=send, account=account))
    _print_dispatch(plan, result)


@app.command("forward")
def forward_command(
    thread_id: str = typer.Argument(...),
    to: list[str] = typer.Option(..., "--to", help="Recipient (repeatable)"),
    body: str = typer.Option("", help="Text above the forwarded message"),
    send: bool = typer.Option(False, "--send", help="Send now instead of saving a draft"),
    account: str | None = AccountOption,
) -> None:
    runtime = _runtime("forward")
    plan, result = _execute(
        _reply_flow(runtime, thread_id, ReplyMode.FORWARD, body, send=send, explicit_to=to, account=account)
    )
    _print_dispatch(plan, result)


@app.command("plan")
def plan_command(
    thread_id: str = typer.Argument(...),
    mode: str = typer.Option("reply", help="reply|reply-all|forward"),
    to: list[str] | None = typer.Option(None, "--to", help="Forward recipient (repeatable)"),
    account: str | None = AccountOption,
) -> None:
    """Print the reply plan for a thread without sending anything."""
    try:
        reply_mode = ReplyMode.parse(mode)
    except ValueError as exc:
        raise typer.BadParameter(f"Unknown mode: {mode}") from exc
    runtime = _runtime("plan")
    plan, _ = _execute(
        _reply_flow(runtime, thread_id, reply_mode, None, explicit_to=to, account=account, dispatch=False)
    )
    print_json(data=plan.to_dict())


@app.command("doctor")
def doctor_command() -> None:
    settings = _load_settings()
    checks = run_doctor_checks(settings)

    print("Doctor results:")
    for check in checks:
        status = check["status"].upper()
        color = {"OK": "green", "WARN": "yellow"}.get(status, "red")
        print(f"- [{color}]{status}[/{color}] {check['check']}: {escape(check['detail'])}")


@app.command("status")
def status_command(port: int | None = PortOption) -> None:
    runtime = _runtime("status")
    settings = runtime.settings
    print(f"Home: {settings.home_dir}")
    print(f"Credential cache: {settings.credentials_path}")
    print(f"Logs: {settings.logs_dir}")

    emails = runtime.store.accounts()
    print(f"Cached accounts: {len(emails)}")
    for email in emails:
        record = runtime.store.peek(email)
        print(f"- {email}: expires {record.expires_at.isoformat()}{' (refreshable)' if record.refresh_token else ''}")

    port = port or settings.debug_port
    target = asyncio.run(runtime.bridge.find_target(port))
    if target is None:
        print(f"Live client: [yellow]not reachable[/yellow] on port {port}")
    else:
        print(f"Live client: [green]connected[/green] {escape(target.url)} (port {port})")


if __name__ == "__main__":
    app()
