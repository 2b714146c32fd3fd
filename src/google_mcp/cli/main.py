"""Command-line interface for google-mcp."""

import asyncio
import sys

import click

from google_mcp.__version__ import __version__


@click.group()
@click.version_option(version=__version__)
def main() -> None:
    """Google MCP Server - Connect MCP clients to Google APIs.

    Authentication uses an OAuth client you provision yourself
    (credentials.json). Run 'google-mcp paths' to see where it belongs.
    """
    pass


@main.command()
def serve() -> None:
    """Start the stdio MCP server.

    The server starts even without a session; use the google_auth tool from
    your MCP client, or run 'google-mcp setup' first.
    """
    from google_mcp.server import main as server_main

    try:
        server_main()
    except KeyboardInterrupt:
        click.echo("\nServer stopped.", err=True)
    except Exception as e:
        click.echo(f"❌ Server error: {e}", err=True)
        sys.exit(1)


@main.command()
@click.option(
    "--timeout",
    default=300.0,
    show_default=True,
    help="Seconds to wait for the browser redirect",
)
def setup(timeout: float) -> None:
    """Authenticate with Google in the browser.

    This will:
    1. Resume the stored session if it is still usable
    2. Otherwise open the browser for the OAuth consent flow
    3. Store the tokens in the data directory
    """
    from google_mcp.auth import LoadStatus, SessionManager
    from google_mcp.server import configure_logging

    configure_logging()
    session = SessionManager(callback_timeout=timeout)
    session.store.ensure_directories()

    async def _run() -> bool | None:
        if await session.initialize():
            return None
        if session.identity_status != LoadStatus.FOUND:
            return False
        click.echo("Starting OAuth authentication flow...")
        click.echo("Browser will open for Google consent...")
        click.echo("")
        return await session.authenticate()

    result = asyncio.run(_run())

    if result is None:
        click.echo("✓ Already authenticated!")
        click.echo(f"Token stored at: {session.token_path}")
        return

    if session.identity_status != LoadStatus.FOUND:
        if session.identity_status == LoadStatus.CORRUPT:
            click.echo(f"❌ Credentials file is unreadable: {session.credentials_path}")
            click.echo("")
        click.echo(session.setup_instructions())
        sys.exit(1)

    if not result:
        outcome = session.last_flow_outcome
        reason = outcome.value if outcome else "unknown"
        click.echo(f"❌ Authentication failed ({reason})")
        sys.exit(1)

    click.echo("✓ Authentication successful!")
    click.echo(f"Token stored at: {session.token_path}")


@main.command("auth-code")
@click.argument("code")
def auth_code(code: str) -> None:
    """Exchange an authorization code copied from the redirect URL."""
    from google_mcp.auth import SessionManager

    session = SessionManager()

    if asyncio.run(session.set_auth_code(code)):
        click.echo("✓ Successfully authenticated with Google!")
        click.echo(f"Token stored at: {session.token_path}")
    else:
        click.echo("❌ Failed to authenticate with the provided code.")
        sys.exit(1)


@main.command()
def status() -> None:
    """Show authentication status.

    Resumes the stored session (refreshing it if needed) without opening a
    browser. Exits with status 1 if no session is usable.
    """
    from google_mcp.auth import SessionManager

    session = SessionManager()
    ready = asyncio.run(session.initialize())

    identity_status = session.identity_status
    session_status = session.session_status

    click.echo("Google MCP Status:")
    click.echo("")
    click.echo(f"  Credentials file: {session.credentials_path}")
    click.echo(f"    {identity_status.value if identity_status else 'not checked'}")
    click.echo(f"  Token file: {session.token_path}")
    click.echo(f"    {session_status.value if session_status else 'not checked'}")
    click.echo(f"  Phase: {session.phase.value}")
    click.echo("")

    if ready:
        click.echo("✓ Authenticated")
    else:
        click.echo("❌ Not authenticated. Run 'google-mcp setup' to authenticate.")
        sys.exit(1)


@main.command()
def logout() -> None:
    """Remove the stored session and revoke it with Google."""
    from google_mcp.auth import SessionManager

    session = SessionManager()
    asyncio.run(session.logout())
    click.echo("✓ Successfully logged out from Google.")


@main.command()
def paths() -> None:
    """Show where google-mcp reads and writes its files."""
    from google_mcp.auth import StoragePaths

    resolved = StoragePaths.resolve()
    click.echo(f"Config directory: {resolved.config_dir}")
    click.echo(f"Data directory:   {resolved.data_dir}")
    click.echo(f"Credentials file: {resolved.credentials_path}")
    click.echo(f"Token file:       {resolved.token_path}")


if __name__ == "__main__":
    main()
