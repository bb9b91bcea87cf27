import asyncio
import json
from pathlib import Path

import click

from . import __version__
from .exceptions import CoreError
from .orchestrator import ModelRouter
from .providers import ChatMessage, ChatRequest
from .telemetry import setup_logging
from .vector_store import FileUpload, VectorStoreClient


def get_version():
    return __version__


def build_router() -> ModelRouter:
    return ModelRouter.from_settings()


def build_vector_store() -> VectorStoreClient:
    return VectorStoreClient.from_settings()


def run(coro):
    """Run ``coro`` and turn core errors into a CLI failure."""
    try:
        return asyncio.run(coro)
    except CoreError as e:
        raise click.ClickException(f"{e.error_code}: {e.message}") from e


@click.group()
@click.option("--log-level", default=None, help="Override LOG_LEVEL.")
def cli(log_level):
    setup_logging(level=log_level)


@cli.command()
@click.option("--format", default="text", type=click.Choice(["text", "json"]))
def version(format):
    if format == "json":
        click.echo(json.dumps({"version": get_version()}))
    else:
        click.echo(f"v{get_version()}")


@cli.command()
@click.option("--provider", default=None, help="Only list this provider's models.")
def models(provider):
    """List the models of every configured provider."""

    async def _models():
        router = build_router()
        try:
            if provider:
                return [(provider, m) for m in router.get_models_by_provider(provider)]
            return [(router.route(m.id).provider, m) for m in router.get_all_models()]
        finally:
            await router.close()

    rows = run(_models())
    if not rows:
        click.echo("No models available. Set at least one provider API key.")
        return
    for provider_id, model in rows:
        click.echo(f"{model.id:<32} {provider_id:<10} {model.display_name}")


@cli.command()
@click.argument("model")
@click.argument("message")
@click.option("--system", default=None, help="System prompt.")
@click.option("--temperature", default=None, type=float)
@click.option("--max-tokens", default=None, type=int)
@click.option("--stream", is_flag=True)
def chat(model, message, system, temperature, max_tokens, stream):
    """Send MESSAGE to MODEL and print the reply."""
    messages = []
    if system:
        messages.append(ChatMessage(role="system", content=system))
    messages.append(ChatMessage(role="user", content=message))
    request = ChatRequest(
        model=model,
        messages=messages,
        temperature=temperature,
        max_tokens=max_tokens,
        stream=stream,
    )

    async def _chat():
        router = build_router()
        try:
            result = await router.chat(request)
            if not stream:
                click.echo(result.content)
                if result.usage:
                    click.echo(
                        f"[{result.provider}/{result.model}] "
                        f"tokens={result.usage.total_tokens} cost=${result.usage.total_cost or 0:.6f}",
                        err=True,
                    )
                return
            async for chunk in result:
                if chunk.content:
                    click.echo(chunk.content, nl=False)
            click.echo()
        finally:
            await router.close()

    run(_chat())


@cli.command()
@click.argument("files", nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False))
@click.option("--wait/--no-wait", default=True, help="Wait for processing to finish.")
@click.option("--poll-interval", default=None, type=float, help="Seconds between polls.")
@click.option("--max-wait", default=None, type=float, help="Seconds to wait before giving up.")
def upload(files, wait, poll_interval, max_wait):
    """Upload FILES to the vector store in one batch."""
    uploads = [FileUpload.from_path(Path(path)) for path in files]

    def progress(job):
        click.echo(
            f"  {job.status.value}: {job.completed_count}/{job.total_count} completed, "
            f"{job.failed_count} failed",
            err=True,
        )

    async def _upload():
        client = build_vector_store()
        try:
            result = await client.upload_files(uploads)
            for record in result.files:
                line = f"{record.filename}: {record.status.value}"
                if record.id:
                    line += f" ({record.id})"
                if record.error:
                    line += f" - {record.error}"
                click.echo(line)

            if not result.batch_id:
                return False
            click.echo(f"batch: {result.batch_id}")
            if not wait:
                return True
            return await client.wait_for_processing(
                result.batch_id,
                poll_interval=poll_interval,
                max_wait_time=max_wait,
                on_progress=progress,
            )
        finally:
            await client.close()

    if not run(_upload()):
        raise click.ClickException("Upload did not complete successfully")


@cli.command()
@click.option("--limit", default=20, type=int)
def files(limit):
    """List files in the vector store."""

    async def _files():
        client = build_vector_store()
        try:
            return await client.list_files(limit=limit)
        finally:
            await client.close()

    for record in run(_files()):
        click.echo(f"{record.id}  {record.status.value:<10} {record.created_at.isoformat()}")


@cli.command()
@click.argument("file_id")
def delete(file_id):
    """Remove FILE_ID from the vector store and file storage."""

    async def _delete():
        client = build_vector_store()
        try:
            return await client.delete_file(file_id)
        finally:
            await client.close()

    if not run(_delete()):
        raise click.ClickException(f"Failed to fully delete {file_id}")
    click.echo(f"Deleted {file_id}")


@cli.command()
@click.argument("batch_id")
def status(batch_id):
    """Show the processing status of BATCH_ID."""

    async def _status():
        client = build_vector_store()
        try:
            return await client.check_batch_status(batch_id)
        finally:
            await client.close()

    job = run(_status())
    click.echo(json.dumps(job.model_dump(mode="json", exclude={"file_ids"}), indent=2))


if __name__ == "__main__":
    cli()
