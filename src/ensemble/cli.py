"""CLI entry point for ensemble."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import TYPE_CHECKING

import typer
import yaml

from ensemble.config import EnsembleConfig

if TYPE_CHECKING:
    from ensemble.agent.registry import AgentCatalog
    from ensemble.session.wire import Wire
    from ensemble.workflow.descriptor import WorkflowDescriptor

app = typer.Typer(
    name="ensemble",
    help="Run multi-agent workflows over LLM agents.",
    no_args_is_help=True,
)
agents_app = typer.Typer(help="Inspect and move agent definitions.", no_args_is_help=True)
app.add_typer(agents_app, name="agents")


def setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _load_catalog(config: EnsembleConfig, catalog_file: str | None) -> AgentCatalog:
    """Catalog from the agents directory, plus an exported catalog file if given."""
    from ensemble.agent.registry import AgentCatalog

    catalog = AgentCatalog()
    catalog.discover([config.agents_dir])
    if catalog_file:
        asyncio.run(catalog.load(catalog_file))
    return catalog


def _load_workflow_file(path: str) -> dict:
    text = Path(path).read_text()
    if path.endswith(".json"):
        return json.loads(text)
    return yaml.safe_load(text) or {}


@app.command()
def run(
    workflow_file: str = typer.Argument(help="YAML or JSON workflow description."),
    input_text: str = typer.Option(..., "--input", "-i", help="Initial user turn."),
    catalog_file: str | None = typer.Option(
        None, "--catalog", help="Exported catalog JSON to load on top of the agents dir."
    ),
    model: str | None = typer.Option(
        None, "--model", "-m", help="Default model for agents that name none."
    ),
    iterations: int = typer.Option(
        1, "--iterations", "-n", min=1, help="Repeat the workflow up to N times."
    ),
    until: str | None = typer.Option(
        None, "--until", help="With --iterations, stop once the output contains this keyword."
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging."),
    config_file: str | None = typer.Option(None, "--config", "-c", help="Config file path."),
) -> None:
    """Run a workflow once (or in a loop) and print its output."""
    from ensemble.errors import EnsembleError
    from ensemble.workflow.descriptor import descriptor_from_dict

    setup_logging(verbose)
    config = EnsembleConfig.load(config_file)
    if model:
        config.llm.model = model

    if not Path(workflow_file).exists():
        typer.echo(f"Error: Workflow file not found: {workflow_file}", err=True)
        raise typer.Exit(1)

    try:
        descriptor = descriptor_from_dict(_load_workflow_file(workflow_file))
        catalog = _load_catalog(config, catalog_file)
    except (ValueError, KeyError, EnsembleError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    typer.echo("ensemble v0.1.0")
    typer.echo(f"Workflow: {descriptor.name} ({descriptor.kind})")
    typer.echo(f"Model: {config.llm.model}")
    typer.echo(f"Agents: {', '.join(descriptor.agent_ids())}")
    typer.echo("---")

    try:
        ok = asyncio.run(_run_workflow(descriptor, catalog, config, input_text, iterations, until))
    except KeyboardInterrupt:
        typer.echo("\nInterrupted.")
        raise typer.Exit(130)
    if not ok:
        raise typer.Exit(1)


async def _run_workflow(
    descriptor: WorkflowDescriptor,
    catalog: AgentCatalog,
    config: EnsembleConfig,
    input_text: str,
    iterations: int,
    until: str | None,
) -> bool:
    """Run the engine with plain CLI output. Returns False on failure."""
    from ensemble.agent.executor import AgentExecutor
    from ensemble.context import ExecutionContext
    from ensemble.llm.provider import create_gateway
    from ensemble.session.wire import Wire
    from ensemble.workflow.conditions import keyword_stop_condition
    from ensemble.workflow.engine import WorkflowEngine
    from ensemble.workflow.loop import LoopConfig, LoopController, workflow_unit
    from ensemble.workflow.record import WorkflowStatus

    gateway = create_gateway(
        model=config.llm.model,
        temperature=config.llm.temperature,
        max_tokens=config.llm.max_tokens,
    )
    executor = AgentExecutor(
        gateway,
        default_max_steps=config.execution.max_steps,
        default_timeout=config.execution.agent_timeout,
    )
    engine = WorkflowEngine(catalog, executor, max_concurrency=config.execution.max_concurrency)

    wire = Wire()
    consumer_task = asyncio.create_task(_consume_wire(wire))
    context = ExecutionContext.from_text(input_text)

    try:
        if iterations > 1:
            controller = LoopController(on_event=wire.send)
            state = await controller.execute_loop(
                workflow_unit(engine, descriptor, on_event=wire.send),
                context,
                LoopConfig(
                    max_iterations=iterations,
                    stop_when=keyword_stop_condition(until) if until else None,
                ),
            )
            typer.echo(f"\n--- Loop: {state.iteration} iterations ({state.stop_reason}) ---")
            record = state.last_result
            ok = state.stop_reason != "error"
        else:
            record = await engine.execute(descriptor, context, on_event=wire.send)
            ok = record.status in (WorkflowStatus.COMPLETED, WorkflowStatus.STOPPED)
    finally:
        wire.close()
        await consumer_task

    if record is not None:
        typer.echo("\n--- Output ---")
        typer.echo(record.output_text or "(no output)")
    return ok


async def _consume_wire(wire: Wire) -> None:
    """Print engine events as they arrive."""
    from ensemble.session.wire import EventType

    queue = wire.subscribe()
    while True:
        event = await queue.get()
        if event is None:
            break

        d = event.data
        if event.type == EventType.STEP_BEGIN:
            print(f"[Step {d.get('step', '?')}] {d.get('agent', '?')}", flush=True)

        elif event.type == EventType.STEP_END:
            reason = d.get("terminal_reason", "?")
            error = d.get("error")
            suffix = f": {error}" if error else ""
            print(f"  < {d.get('agent', '?')} {reason}{suffix}", flush=True)

        elif event.type == EventType.ROUTE_SELECTED:
            print(f"  -> routed to {d.get('destination', '?')}", flush=True)

        elif event.type == EventType.EVALUATION:
            score = d.get("score")
            score_str = f"{score:.1f}" if score is not None else "n/a"
            print(
                f"  [round {d.get('round', '?')}] score {score_str} / {d.get('target')}",
                flush=True,
            )

        elif event.type == EventType.ITERATION:
            print(f"\n=== Iteration {d.get('iteration', '?')} done ===", flush=True)

        elif event.type == EventType.WORKFLOW_END:
            reason = d.get("stop_reason")
            suffix = f" ({reason})" if reason else ""
            print(f"--- {d.get('status', '?')}{suffix} after {d.get('steps', 0)} steps ---")

        elif event.type == EventType.ERROR:
            print(f"\nERROR: {d.get('error', 'Unknown error')}", flush=True)

    wire.unsubscribe(queue)


# --- agents ---


@agents_app.command("list")
def agents_list(
    capability: str | None = typer.Option(None, "--capability", help="Filter by capability tag."),
    catalog_file: str | None = typer.Option(None, "--catalog", help="Exported catalog JSON."),
    config_file: str | None = typer.Option(None, "--config", "-c", help="Config file path."),
) -> None:
    """List registered agents."""
    catalog = _load_catalog(EnsembleConfig.load(config_file), catalog_file)
    agents = catalog.find_by_capability(capability) if capability else catalog.all()
    if not agents:
        typer.echo("No agents found.")
        return
    for agent in agents:
        tags = f" [{', '.join(agent.capabilities)}]" if agent.capabilities else ""
        typer.echo(f"{agent.id}: {agent.name}{tags}")
        if agent.description:
            typer.echo(f"    {agent.description}")


@agents_app.command("export")
def agents_export(
    output: str | None = typer.Option(
        None, "--output", "-o", help="Write to file instead of stdout."
    ),
    catalog_file: str | None = typer.Option(None, "--catalog", help="Exported catalog JSON."),
    config_file: str | None = typer.Option(None, "--config", "-c", help="Config file path."),
) -> None:
    """Export the catalog as JSON."""
    catalog = _load_catalog(EnsembleConfig.load(config_file), catalog_file)
    if output:
        asyncio.run(catalog.save(output))
        typer.echo(f"Exported {len(catalog)} agents to {output}")
    else:
        typer.echo(catalog.export(pretty=True))


@agents_app.command("import")
def agents_import(
    source: str = typer.Argument(help="Catalog JSON to import."),
    target: str = typer.Option(..., "--into", help="Catalog JSON file to merge into."),
    replace: bool = typer.Option(False, "--replace", help="Overwrite agents with the same id."),
) -> None:
    """Merge one exported catalog file into another."""
    from ensemble.agent.registry import AgentCatalog

    if not Path(source).exists():
        typer.echo(f"Error: File not found: {source}", err=True)
        raise typer.Exit(1)

    async def _merge() -> list[str]:
        catalog = AgentCatalog()
        if Path(target).exists():
            await catalog.load(target)
        incoming = AgentCatalog()
        await incoming.load(source)
        imported = []
        for agent in incoming.all():
            if agent.id in catalog:
                if not replace:
                    typer.echo(f"Skipping {agent.id}: already in {target}")
                    continue
                catalog.unregister(agent.id)
            catalog.register(agent)
            imported.append(agent.id)
        await catalog.save(target)
        return imported

    imported = asyncio.run(_merge())
    typer.echo(f"Imported {len(imported)} agents into {target}")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
