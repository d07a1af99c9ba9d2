"""Main entry point for Draftsmith."""

import asyncio
import os
import sys
from collections.abc import Awaitable
from pathlib import Path
from typing import TypeVar

import typer

from draftsmith.cli import TerminalUI, get_ui
from draftsmith.compaction import ContextCompactor
from draftsmith.config import Config, get_config, set_config
from draftsmith.exceptions import DraftsmithError
from draftsmith.host.client import EngineClient
from draftsmith.host.project import ProjectToolHost, normalize_chapter_id
from draftsmith.instructions import InstructionLoader
from draftsmith.logging import configure_logging, log
from draftsmith.runner import AgentRunner, LocalAgentRunner
from draftsmith.session import Session, SessionManager
from draftsmith.workflow import ContinuationWorkflow, TurnResult

T = TypeVar("T")

app = typer.Typer(help="Draftsmith - an AI writing assistant for long-form projects")


def _load_config(config: str, verbose: bool) -> Config:
    if verbose:
        os.environ["DRAFTSMITH_LOGGING__LEVEL"] = "DEBUG"
    cfg = Config.from_yaml(Path(config)) if config else Config.load()
    set_config(cfg)
    configure_logging()
    return cfg


async def _run_cancellable(
    ui: TerminalUI,
    workflow: ContinuationWorkflow,
    session: Session,
    work: Awaitable[T],
) -> T:
    """Run a turn; ESC asks the workflow to cancel instead of killing the task."""
    work_task = asyncio.ensure_future(work)
    esc_task = asyncio.create_task(ui.wait_for_escape()) if ui.can_capture_escape() else None
    try:
        if esc_task is None:
            return await work_task

        done, _ = await asyncio.wait({work_task, esc_task}, return_when=asyncio.FIRST_COMPLETED)
        if esc_task in done and esc_task.result():
            print("ESC pressed, stopping...")
            workflow.cancel(session)
        return await work_task
    finally:
        if esc_task and not esc_task.done():
            esc_task.cancel()
            try:
                await esc_task
            except asyncio.CancelledError:
                pass


async def _show_turn(ui: TerminalUI, turn: TurnResult) -> None:
    if turn.clarification is not None:
        ui.print_warning(turn.clarification)
        return
    if turn.compaction is not None and turn.compaction.compacted:
        ui.print_success(f"Context compacted ({turn.compaction.reason})")
    if turn.result is not None:
        ui.print_tool_calls([record.to_dict() for record in turn.result.tool_calls])
    await ui.stream_assistant(turn.content)
    if turn.result is not None and turn.result.step_limit_exceeded:
        ui.print_warning(f"Stopped after {turn.result.max_steps} steps; the reply may be incomplete.")
    if turn.is_draft:
        meta = (turn.assistant_message or {}).get("metadata") or {}
        ui.print_draft_actions(meta.get("word_count"))
    elif turn.appended:
        ui.print_success("Draft appended to the chapter.")


def _build_runner(cfg: Config, host: ProjectToolHost, use_engine: bool) -> AgentRunner:
    if use_engine:
        return EngineClient.from_config(host, cfg)
    return LocalAgentRunner.from_config(host, cfg)


async def run_interactive(chapter: str = "", session_name: str = "default", use_engine: bool = False) -> None:
    """Interactive continuation loop over the configured project."""
    ui = get_ui()
    cfg = get_config()
    project_path = cfg.resolved_workspace_path()
    chapter_id = normalize_chapter_id(chapter) if chapter else None

    host = ProjectToolHost(project_path, chapter_id=chapter_id)
    runner = _build_runner(cfg, host, use_engine)
    manager = SessionManager(cfg.resolved_session_path())
    workflow = ContinuationWorkflow(
        runner=runner,
        project_path=str(project_path),
        compactor=ContextCompactor.from_config(runner.summarize, cfg),
        instructions=InstructionLoader(project_path),
        store=manager,
    )

    session = await manager.get_or_create_session(session_name, chapter_id=chapter_id)
    if chapter_id and session.chapter_id != chapter_id:
        session.chapter_id = chapter_id
        await manager.save_session(session)
    host.chapter_id = session.chapter_id

    ui.print_welcome(project_path, session.chapter_id)
    try:
        while True:
            try:
                raw = await asyncio.to_thread(ui.prompt)
            except EOFError:
                break
            parsed = ui.handle_special_command(raw)
            if parsed is None:
                continue
            command, argument = parsed
            if command == "EXIT":
                break
            if command == "SEND" and not argument:
                continue

            try:
                if command == "HISTORY":
                    ui.print_history(session.messages)
                elif command == "CHAPTER":
                    session.chapter_id = normalize_chapter_id(argument)
                    session.chapter_title = None
                    host.chapter_id = session.chapter_id
                    await manager.save_session(session)
                    ui.print_success(f"Chapter set to {session.chapter_id}")
                elif command == "NEW":
                    session = await manager.create_session(
                        argument or session_name, chapter_id=session.chapter_id
                    )
                    ui.print_success(f"Started session {session.id}")
                elif command == "DISCARD":
                    await workflow.discard_draft(session, argument or None)
                    ui.print_success("Draft discarded.")
                else:
                    if command == "CONFIRM":
                        work = workflow.confirm_draft(session, argument or None)
                    elif command == "REGENERATE":
                        work = workflow.regenerate_draft(session, argument or None)
                    else:
                        work = workflow.submit_turn(session, argument)
                    turn = await _run_cancellable(ui, workflow, session, work)
                    await _show_turn(ui, turn)
            except DraftsmithError as e:
                ui.print_error(e)
    finally:
        ui.save_history()
        await runner.close()
        await manager.close()


@app.command()
def chat(
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    chapter: str = typer.Option("", "--chapter", help="Chapter to continue (e.g. 3 or chapter_003)"),
    session: str = typer.Option("default", "-s", "--session", help="Session name"),
    engine: bool = typer.Option(False, "--engine", help="Run the agent in an engine subprocess"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    """Start an interactive writing session."""
    _load_config(config, verbose)
    try:
        asyncio.run(run_interactive(chapter, session, engine))
    except KeyboardInterrupt:
        log.info("Shutting down...")
        sys.exit(0)
    except DraftsmithError as e:
        get_ui().print_error(e)
        sys.exit(1)


@app.command()
def engine(
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
) -> None:
    """Serve one request over stdin/stdout (line-delimited JSON)."""
    from draftsmith.engine import run_engine

    cfg = _load_config(config, False)
    code = asyncio.run(run_engine(cfg))
    raise typer.Exit(code)


@app.command()
def models(
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    provider: str = typer.Option("", "-p", "--provider", help="Provider id (defaults to the current one)"),
) -> None:
    """List the models a configured provider offers."""
    from draftsmith.llm.providers import fetch_models

    cfg = _load_config(config, False)
    provider_id = provider or cfg.model.provider
    descriptor = cfg.get_provider(provider_id) if provider_id else None
    if descriptor is None:
        get_ui().print_error(f"Unknown provider: {provider_id or '(none)'}")
        raise typer.Exit(1)
    try:
        names = asyncio.run(
            fetch_models(
                descriptor.base_url,
                descriptor.api_key,
                provider_type=descriptor.provider_type,
                headers=descriptor.headers,
            )
        )
    except DraftsmithError as e:
        get_ui().print_error(e)
        raise typer.Exit(1)
    for name in names:
        print(name)


@app.command()
def version() -> None:
    """Show version information."""
    from draftsmith import __version__
    print(f"Draftsmith v{__version__}")


if __name__ == "__main__":
    app()
