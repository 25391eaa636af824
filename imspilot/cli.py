#!/usr/bin/env python3
"""Command line entry point: work through the unfinished activities of your courses."""

import asyncio
import logging
from collections import Counter
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.table import Table
from tqdm import tqdm

from imspilot.course.directory import LmsCourseDirectory
from imspilot.course.events import (
    CourseDone,
    CourseError,
    CourseSkip,
    GroupEnd,
    GroupError,
    GroupStart,
    LaneError,
    ProgressBus,
    describe,
)
from imspilot.course.orchestrator import CourseOrchestrator, GroupPolicy
from imspilot.course.processors import ProcessorServices, build_registry
from imspilot.exam.answer_model import AnswerModel
from imspilot.exam.api import HttpExamApi
from imspilot.exceptions import ConfigError, ImsPilotError
from imspilot.libs.config_loader import ConfigType, get_config, load_default_configs

LOG = logging.getLogger(__name__)

console = Console()

FEATURES = [
    ("enable_video", "Videos and lessons"),
    ("enable_exam", "Exams"),
    ("enable_classroom", "In-class quizzes"),
    ("enable_page", "Pages"),
    ("enable_material", "Materials"),
    ("enable_forum", "Forums"),
    ("enable_web_link", "Web links"),
]


class ConsoleProgress:
    """Progress listener: one tqdm bar per group plus a line per finished activity."""

    def __init__(self):
        self.bar: Optional[tqdm] = None
        self.counts = Counter()

    def __call__(self, event) -> None:
        if isinstance(event, GroupStart):
            self.close()
            tqdm.write(describe(event))
            self.bar = tqdm(total=event.total, desc=event.group[:30], unit="activity")
            return

        if isinstance(event, (CourseDone, CourseSkip, CourseError)):
            self.counts[event.kind] += 1
            tqdm.write(describe(event))
            if self.bar is not None:
                self.bar.update(1)
            return

        if isinstance(event, (GroupError, LaneError)):
            self.counts[event.kind] += 1
            tqdm.write(describe(event))
        if isinstance(event, (GroupEnd, GroupError)):
            self.close()

    def close(self) -> None:
        if self.bar is not None:
            self.bar.close()
            self.bar = None


def build_answer_model(configs: ConfigType) -> Optional[AnswerModel]:
    try:
        return AnswerModel.from_config(configs)
    except ConfigError as e:
        LOG.warning("AI answering disabled: %s", e)
        return None


def print_features(configs: ConfigType, ai_enabled: bool) -> None:
    table = Table(title="Enabled features")
    table.add_column("Feature", style="cyan")
    table.add_column("Enabled", justify="center")
    for key, label in FEATURES:
        enabled = bool(get_config(f"features.{key}", configs, default=True))
        table.add_row(label, "[green]yes[/green]" if enabled else "[red]no[/red]")
    table.add_row("AI answering", "[green]yes[/green]" if ai_enabled else "[red]no[/red]")
    console.print(table)


def print_summary(counts: Counter) -> None:
    table = Table(title="Summary")
    table.add_column("Outcome", style="cyan")
    table.add_column("Count", justify="right")
    table.add_row("Done", str(counts["courseDone"]))
    table.add_row("Skipped", str(counts["courseSkip"]))
    table.add_row("Failed", str(counts["courseError"]))
    table.add_row("Failed groups", str(counts["groupError"]))
    table.add_row("Lanes that failed to open", str(counts["laneError"]))
    console.print(table)


async def run(configs: ConfigType, policy: GroupPolicy, answer_model: Optional[AnswerModel],
              progress: ConsoleProgress) -> None:
    exam_api = HttpExamApi.from_config(configs)
    directory = LmsCourseDirectory.from_config(configs)
    services = ProcessorServices(exam_api=exam_api, answer_model=answer_model, configs=configs)

    bus = ProgressBus()
    bus.subscribe(progress)
    orchestrator = CourseOrchestrator(directory, build_registry(services, configs), bus, configs)

    try:
        groups = await directory.list_groups()
        selected = orchestrator.select_groups(groups, policy)
        console.print(f"Running {len(selected)} of {len(groups)} course groups: "
                      + ", ".join(g.title for g in selected))
        await orchestrator.run(selected)
    finally:
        progress.close()
        await orchestrator.close()
        await directory.close()
        await exam_api.close()


@click.command()
@click.option(
    '--config',
    '-c',
    'config_paths',
    type=click.Path(exists=True, path_type=Path),
    multiple=True,
    help='Extra YAML config merged over config/default.yaml and config/local.yaml'
)
@click.option('--group', '-g', type=int, default=None, help='1-based course group index (0 = all groups)')
@click.option('--title', '-t', default=None, help='Run the groups whose title contains this text')
@click.option('--concurrency', type=int, default=None, help='Number of lanes (0 = one per activity, max 6)')
@click.option('--yes', '-y', is_flag=True, help='Do not ask before submitting AI-generated answers')
@click.option('--verbose', '-v', is_flag=True, help='Enable debug logging')
def main(config_paths, group, title, concurrency, yes, verbose):
    """
    Complete the unfinished activities of your online courses.

    Example:
        imspilot --title "Economics" --concurrency 3
    """
    try:
        configs = load_default_configs(*[str(p) for p in config_paths])
    except (TypeError, ValueError) as e:
        raise click.ClickException(f"Could not load configuration: {e}")

    level = logging.DEBUG if verbose else get_config("logging.level", configs, default="INFO")
    logging.basicConfig(
        level=level,
        format=get_config("logging.format", configs,
                          default='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    )

    if concurrency is not None:
        configs.setdefault("runner", {})["concurrency"] = concurrency

    answer_model = build_answer_model(configs)
    if answer_model is not None and not yes:
        console.print("[bold yellow]Exam answers are generated by an AI model and may be wrong.[/bold yellow]")
        if not click.confirm("Submit AI-generated answers?", default=True):
            answer_model = None

    console.print("\n[bold cyan]imspilot[/bold cyan]")
    print_features(configs, answer_model is not None)

    progress = ConsoleProgress()
    try:
        asyncio.run(run(configs, GroupPolicy(index=group, title=title), answer_model, progress))
    except ImsPilotError as e:
        raise click.ClickException(str(e))
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted[/yellow]")

    print_summary(progress.counts)


if __name__ == "__main__":
    main()
