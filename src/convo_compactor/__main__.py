import asyncio

import typer
from dotenv import load_dotenv
from loguru import logger

from convo_compactor.app_config import load_json_config, parse_app_config, resolve_runtime_env
from convo_compactor.bootstrap import bootstrap_runtime
from convo_compactor.errors import AlreadyInProgress, InvalidInput
from convo_compactor.models import ArtifactKind, ConversationKey, SessionStatus
from convo_compactor.progress import EventType
from convo_compactor.suggestions import suggest_questions
from convo_compactor.transcripts import load_conversation_file

app = typer.Typer(
    name="convo-compactor",
    help="Compact a long AI-assisted coding conversation into a reusable artifact.",
    add_completion=False,
)


async def main(
    workspace: str,
    conversation: str,
    *,
    kind: ArtifactKind = ArtifactKind.COMPACT,
    transcript_path: str | None = None,
    config_path: str | None = None,
    force: bool = False,
    suggest: bool = False,
) -> int:
    load_dotenv()

    config = parse_app_config(load_json_config(config_path))
    env = resolve_runtime_env(config.provider_name)
    if not env.provider_api_key:
        logger.error(f"{env.provider_env_var} environment variable is required.")
        return 1

    transcript = None
    title = ""
    if transcript_path:
        try:
            loaded = load_conversation_file(transcript_path, default_title=conversation)
        except (OSError, ValueError) as ex:
            logger.error(f"Could not read transcript: {ex}")
            return 2
        transcript, title = loaded.messages, loaded.title

    runtime = bootstrap_runtime(config, env)
    orchestrator = runtime.orchestrator(kind)
    key = ConversationKey(workspace, conversation)

    if runtime.log_descriptions:
        print(f"Logging: {', '.join(runtime.log_descriptions)}")

    try:
        subscription = runtime.bus.subscribe_queue(maxsize=200)

        async def printer() -> None:
            async for event in subscription:
                if event.type is EventType.LOG:
                    continue
                step = event.step or event.status
                print(f"[{event.progress:>3}%] {step:<10} {event.message or ''}")

        printer_task = asyncio.create_task(printer())
        try:
            result = await orchestrator.run(key, transcript, title, force=force)
        finally:
            subscription.close()
            await printer_task
    except (InvalidInput, AlreadyInProgress) as ex:
        logger.error(str(ex))
        await runtime.close()
        return 2

    try:
        if result.cached:
            print(f"\nUsing cached {kind} artifact (use --force to regenerate)")
        elif result.session is not None and result.session.status is not SessionStatus.COMPLETED:
            print(f"\nSession {result.session.id} {result.session.status}: {result.session.error or ''}")
            return 1

        artifact = result.artifact
        if artifact is None:
            return 1
        print(
            f"\n{artifact.title}\n"
            f"{artifact.original_token_count:,} -> {artifact.compacted_token_count:,} tokens "
            f"({artifact.compression_ratio:.1%}), {artifact.strategy_used}, "
            f"{artifact.chunk_count} chunk(s), budget {artifact.budget_used:,}\n"
        )
        print(artifact.content)

        if suggest:
            questions = await suggest_questions(runtime.provider, config.model, artifact.content)
            if questions:
                print("\nFollow-up questions:")
                for question in questions:
                    print(f"  - {question.question}")
        return 0
    finally:
        await runtime.close()


@app.command()
def compact(
    workspace: str = typer.Argument(..., help="Workspace id"),
    conversation: str = typer.Argument(..., help="Conversation id"),
    kind: ArtifactKind = typer.Option(ArtifactKind.COMPACT, "--kind", help="Artifact to produce"),
    transcript: str = typer.Option(None, "--transcript", help="JSON file with the conversation (overrides TranscriptRoot)"),
    config: str = typer.Option(None, "--config", help="Path to config.json (defaults to ./config.json)"),
    force: bool = typer.Option(False, "--force", help="Ignore a cached artifact and run again"),
    suggest: bool = typer.Option(False, "--suggest", help="Print follow-up questions for the artifact"),
) -> None:
    """Run one compaction session and print the resulting artifact."""
    exit_code = asyncio.run(main(
        workspace,
        conversation,
        kind=kind,
        transcript_path=transcript,
        config_path=config,
        force=force,
        suggest=suggest,
    ))
    if exit_code:
        raise typer.Exit(exit_code)


def run() -> None:
    app()


if __name__ == "__main__":
    run()
