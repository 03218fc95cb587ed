"""buildtree CLI.

Installed as the ``buildtree`` console_script; also runnable as
``python -m buildtree``.
"""

from __future__ import annotations

import sys

import click

from buildtree import __version__
from buildtree.config import DEFAULT_BUILD_FILE, DEFAULT_MAX_WORKERS, Config
from buildtree.errors import BuildError


CONTEXT_SETTINGS = dict(help_option_names=["-h", "--help"])


def _load(cfg: Config):
    """Load the build declaration, exiting with status 1 on configuration errors."""
    from buildtree import log as blog
    from buildtree.tasks.loader import load_build_file

    try:
        return load_build_file(cfg.build_file, cfg)
    except BuildError as e:
        blog.error(str(e))
        sys.exit(1)


@click.group(context_settings=CONTEXT_SETTINGS)
@click.option(
    "-f", "--file", "build_file",
    default=DEFAULT_BUILD_FILE,
    show_default=True,
    help="Build declaration file",
)
@click.option("-v", "--verbose", is_flag=True, help="Show debug output")
@click.version_option(__version__, prog_name="buildtree")
@click.pass_context
def main(ctx: click.Context, build_file: str, verbose: bool) -> None:
    """buildtree: build-graph task orchestrator.

    Resolves the project tree declared in a build file, plans the tasks
    reachable from the ones you request, and runs them in dependency order.

    \b
    EXAMPLES:
      buildtree run :core:build              # One task and its dependencies
      buildtree run build                    # 'build' in every project
      buildtree run test --workers 8         # Up to 8 tasks at once
      buildtree run build --fail-fast        # Stop at the first failure
      buildtree run build --dry-run          # Show the plan only
      buildtree projects                     # Print the project tree
      buildtree tasks                        # List registered tasks
    """
    from buildtree import log as blog

    blog.set_verbose(verbose)
    ctx.obj = {"build_file": build_file, "verbose": verbose}


# ── Subcommand: run ──────────────────────────────────────────────


@main.command()
@click.argument("tasks", nargs=-1, required=True)
@click.option("--fail-fast", is_flag=True, help="Stop the whole run at the first task failure")
@click.option(
    "--workers", "max_workers",
    type=click.IntRange(min=1),
    default=None,
    help=f"Max concurrent tasks [default: $BUILDTREE_MAX_WORKERS or {DEFAULT_MAX_WORKERS}]",
)
@click.option("--sequential", is_flag=True, help="Run tasks one at a time")
@click.option("--dry-run", is_flag=True, help="Show the execution plan without running it")
@click.option("--report", "report_file", default="", help="Write a JSON run report to this path")
@click.pass_context
def run(
    ctx: click.Context,
    tasks: tuple[str, ...],
    fail_fast: bool,
    max_workers: int | None,
    sequential: bool,
    dry_run: bool,
    report_file: str,
) -> None:
    """Run TASKS and everything they depend on.

    A task path such as ``:core:build`` selects one task; a bare name such
    as ``build`` selects that task in every project that declares it.
    """
    from buildtree import log as blog
    from buildtree.summary import show_summary, write_report

    opts = ctx.obj or {}
    try:
        cfg = Config(
            max_workers=max_workers,
            sequential=sequential,
            fail_fast=fail_fast,
            dry_run=dry_run,
            build_file=opts.get("build_file", DEFAULT_BUILD_FILE),
            report_file=report_file,
            verbose=opts.get("verbose", False),
        )
    except BuildError as e:
        blog.error(str(e))
        sys.exit(1)

    build = _load(cfg)
    try:
        plan = build.plan(list(tasks))
    except BuildError as e:
        blog.error(str(e))
        sys.exit(1)

    if cfg.dry_run:
        _show_dry_run(plan)
        sys.exit(0)

    from buildtree.runner import Executor

    result = Executor(plan, cfg).run()
    show_summary(result)
    if cfg.report_file:
        write_report(result, cfg.report_file)
        blog.info(f"Report: {cfg.report_file}")
    sys.exit(result.exit_code)


def _show_dry_run(plan) -> None:
    from buildtree import log as blog

    blog.console.print("")
    blog.console.print("[bold]============================================[/bold]")
    blog.console.print("[bold]buildtree[/bold] Dry run (no execution)")
    blog.console.print(f"Requested: [cyan]{' '.join(plan.requested)}[/cyan]")
    blog.info(f"Planned tasks: {len(plan)}")
    for path in plan.order:
        deps = plan.dependencies.get(path, ())
        after = f" [dim](after {', '.join(deps)})[/dim]" if deps else ""
        blog.console.print(f"  - {path}{after}")
    blog.console.print("[bold]============================================[/bold]")


# ── Subcommand: projects ─────────────────────────────────────────


@main.command()
@click.pass_context
def projects(ctx: click.Context) -> None:
    """Print the project tree."""
    from buildtree import log as blog

    opts = ctx.obj or {}
    build = _load(Config(build_file=opts.get("build_file", DEFAULT_BUILD_FILE)))
    for line in build.tree.render():
        blog.console.print(line)


# ── Subcommand: tasks ────────────────────────────────────────────


@main.command("tasks")
@click.pass_context
def list_tasks(ctx: click.Context) -> None:
    """List registered tasks without configuring lazy ones."""
    from buildtree import log as blog

    opts = ctx.obj or {}
    build = _load(Config(build_file=opts.get("build_file", DEFAULT_BUILD_FILE)))
    found = False
    for proj in build.tree.projects():
        names = build.registry.names(proj)
        if not names:
            continue
        found = True
        label = f"Root project '{proj.name}'" if proj.is_root else f"Project '{proj.path}'"
        blog.console.print(f"[bold]{label}[/bold]")
        for task in build.registry.tasks(proj):
            desc = f" - {task.description}" if task.description else ""
            blog.console.print(f"  {task.path}{desc}")
    if not found:
        blog.warn("No tasks declared.")
