import asyncio
import json
import logging

import click

from page_mirror import DEFAULT_OUTPUT_DIR, MirrorConfig, MirrorError, mirror_page


@click.group()
def cli():
    """Page Mirror CLI"""
    pass


@cli.command()
@click.argument("url")
@click.option("--output", "-o", default=DEFAULT_OUTPUT_DIR, show_default=True, help="Directory to write the mirror into")
@click.option(
    "--concurrency",
    "-c",
    default=8,
    show_default=True,
    type=click.IntRange(min=0),
    help="Maximum simultaneous asset downloads (0 for no limit)",
)
@click.option("--timeout", default=60.0, show_default=True, type=float, help="Per-request timeout in seconds")
@click.option("--user-agent", default=None, help="User-Agent header to send")
@click.option("--no-format", "no_format", is_flag=True, help="Save stylesheets and scripts without pretty-printing")
@click.option("--json", "as_json", is_flag=True, help="Print the job summary as JSON")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def mirror(url, output, concurrency, timeout, user_agent, no_format, as_json, verbose):
    """Mirror a single web page and its assets for offline use."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="[%(levelname)s] %(message)s",
    )
    config = MirrorConfig(max_concurrency=concurrency, timeout=timeout, format_assets=not no_format)
    if user_agent:
        config.user_agent = user_agent

    try:
        result = asyncio.run(mirror_page(url, output, config))
    except MirrorError as e:
        raise click.ClickException(str(e))

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        return

    click.echo(f"Saved to {result.index_path}")
    click.echo(f"{len(result.succeeded)} assets saved, {len(result.failed)} failed")
    for item in result.failed:
        click.echo(f"  failed {item.reference.kind.label}: {item.reference.original_value} ({item.reason})")


if __name__ == "__main__":
    cli()
