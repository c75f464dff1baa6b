import argparse
import asyncio
import logging
import sys
from pathlib import Path

import yaml
from tqdm import tqdm

from . import workflows
from .config import resolve_config
from .errors import ConfigurationError
from .jobs.key_pool import KeyPool, mask_key, no_settings_resolver, video_settings_resolver
from .jobs.models import BaseTask
from .providers import PROVIDERS
from .store import DocumentStore

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)


def _banner(title: str) -> None:
    print("\n" + "=" * 60)
    print(title)
    print("=" * 60)


def _run_videos(args, config, store: DocumentStore) -> None:
    data = asyncio.run(store.read())
    workflow = args.workflow or config.providers.workflow
    targets = workflows.select_video_targets(data, workflow, args.numbers)
    finished = set()

    with tqdm(total=len(targets), desc="Videos", unit="task") as bar:

        def track(task: BaseTask) -> None:
            if task.is_terminal and task.id not in finished:
                finished.add(task.id)
                bar.update(1)

        result = asyncio.run(
            workflows.generate_videos(
                store,
                config,
                numbers=args.numbers,
                workflow=workflow,
                provider=args.provider,
                on_task_update=track,
                concurrency=args.concurrency,
                max_attempts=args.max_attempts,
            )
        )

    _banner("VIDEO GENERATION SUMMARY")
    print(f"Result:               {result.message}")
    print(f"Succeeded:            {len(result.succeeded)}")
    print(f"Failed:               {len(result.failed)}")
    for failure in result.failed:
        print(f"  {failure.number:<20}{failure.status:<12}{failure.error}")
    print("=" * 60)
    if not result.success:
        sys.exit(1)


def _run_images(args, config, store: DocumentStore) -> None:
    try:
        result = asyncio.run(
            workflows.generate_images(
                store, config, mode=args.mode, numbers=args.numbers, concurrency=args.concurrency
            )
        )
    except ValueError as e:
        print(f"❌ {e}")
        sys.exit(2)

    _banner("IMAGE GENERATION SUMMARY")
    print(f"Succeeded:            {len(result.results) - len(result.failed)}")
    print(f"Failed:               {len(result.failed)}")
    for failure in result.failed:
        print(f"  {failure.job_id:<20}{failure.error.code:<16}{failure.error.message}")
    for line in result.diagnostics or []:
        print(f"Note: {line}")
    print("=" * 60)
    if result.results and len(result.failed) == len(result.results):
        sys.exit(1)


def _run_check(store: DocumentStore) -> None:
    print("Checking credentials...")
    found = 0
    seen_families = set()
    for spec in PROVIDERS.values():
        if spec.family in seen_families:
            continue
        seen_families.add(spec.family)
        pool = KeyPool(
            store,
            spec.platform_matcher,
            env_var_names=spec.env_var_names,
            settings_resolver=video_settings_resolver if spec.family == "kie" else no_settings_resolver,
            missing_key_message=spec.missing_key_message,
        )
        try:
            asyncio.run(pool.init())
        except ConfigurationError as e:
            print(f"❌ {spec.family}: {e}")
            continue
        found += 1
        entry = pool.peek()
        print(f"✅ {spec.family}: {len(pool)} key(s), first {entry.name} ({mask_key(entry.api_key)})")
    if not found:
        sys.exit(1)


def main():
    parser = argparse.ArgumentParser(
        prog="genbatch", description="Batch AI video and image generation"
    )
    parser.add_argument("--data", type=str, help="Application data file (JSON)")
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level",
    )
    subparsers = parser.add_subparsers(dest="command", help="Subcommands")

    # VIDEOS
    videos_parser = subparsers.add_parser("videos", help="Generate pending video tasks")
    videos_parser.add_argument("--numbers", "-n", nargs="+", help="Only these task numbers")
    videos_parser.add_argument("--workflow", "-w", choices=["A", "B"], help="Workflow preset")
    videos_parser.add_argument("--provider", "-p", choices=sorted(PROVIDERS), help="Video provider")
    videos_parser.add_argument("--concurrency", type=int, help="Override concurrency")
    videos_parser.add_argument("--max-attempts", type=int, help="Override submission attempts")
    videos_parser.add_argument("--poll-interval", type=float, help="Seconds between polls")
    videos_parser.add_argument("--max-polls", type=int, help="Poll budget per task")

    # IMAGES
    images_parser = subparsers.add_parser("images", help="Generate images for prompts")
    images_parser.add_argument(
        "--mode", "-m", choices=list(workflows.IMAGE_MODES), default="new", help="Prompt selection"
    )
    images_parser.add_argument("--numbers", "-n", nargs="+", help="Prompt numbers for --mode selected")
    images_parser.add_argument("--concurrency", type=int, help="Override concurrency")

    # CHECK
    subparsers.add_parser("check", help="Verify provider credentials")

    # TASKS subcommands (status)
    tasks_parser = subparsers.add_parser("tasks", help="Inspect video tasks")
    tasks_subparsers = tasks_parser.add_subparsers(dest="tasks_command", help="Task commands")
    tasks_subparsers.add_parser("status", help="Show video task status counts")

    # CSV subcommands (export, import)
    csv_parser = subparsers.add_parser("csv", help="CSV import/export of video tasks")
    csv_subparsers = csv_parser.add_subparsers(dest="csv_command", help="CSV commands")
    export_parser = csv_subparsers.add_parser("export", help="Write video tasks to CSV")
    export_parser.add_argument("--file", "-f", type=str, help="Output file (stdout if omitted)")
    export_parser.add_argument("--workflow", "-w", choices=["A", "B"], help="Only this workflow")
    import_parser = csv_subparsers.add_parser("import", help="Create/update video tasks from CSV")
    import_parser.add_argument("--file", "-f", type=str, required=True, help="CSV file to read")
    import_parser.add_argument("--workflow", "-w", choices=["A", "B"], default="A", help="Workflow preset")
    import_parser.add_argument("--provider", "-p", choices=sorted(PROVIDERS), help="Video provider")

    # CONFIG subcommands (show)
    config_parser = subparsers.add_parser("config", help="Configuration")
    config_subparsers = config_parser.add_subparsers(dest="config_command", help="Config commands")
    config_subparsers.add_parser("show", help="Print the resolved configuration")

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        return

    configure_logging(args.log_level)
    cli_dict = {k: v for k, v in vars(args).items() if v is not None}
    config = resolve_config(cli_dict)
    store = DocumentStore(config.storage.data_file)

    try:
        if args.command == "videos":
            _run_videos(args, config, store)

        elif args.command == "images":
            _run_images(args, config, store)

        elif args.command == "check":
            _run_check(store)

        elif args.command == "tasks":
            if args.tasks_command == "status":
                counts = workflows.summarize_video_tasks(asyncio.run(store.read()))
                _banner("VIDEO TASK STATUS")
                print(f"Waiting:              {counts['waiting']}")
                print(f"Submitting:           {counts['submitting']}")
                print(f"Generating:           {counts['generating']}")
                print(f"Downloading:          {counts['downloading']}")
                print(f"Succeeded:            {counts['succeeded']}")
                print(f"Failed:               {counts['failed']}")
                print(f"Total:                {counts['total']}")
                print("=" * 60)
            else:
                tasks_parser.print_help()

        elif args.command == "csv":
            if args.csv_command == "export":
                text = workflows.export_video_tasks_csv(asyncio.run(store.read()), workflow=args.workflow)
                if args.file:
                    Path(args.file).write_text(text, encoding="utf-8")
                    print(f"✅ Exported to {args.file}")
                else:
                    print(text, end="")
            elif args.csv_command == "import":
                text = Path(args.file).read_text(encoding="utf-8")
                try:
                    numbers = asyncio.run(
                        workflows.import_video_tasks_csv(
                            store, text, workflow=args.workflow, provider=args.provider
                        )
                    )
                except ValueError as e:
                    print(f"❌ {e}")
                    sys.exit(2)
                print(f"✅ Imported {len(numbers)} task(s)")
            else:
                csv_parser.print_help()

        elif args.command == "config":
            if args.config_command == "show":
                print(yaml.safe_dump(config.model_dump(), sort_keys=False, allow_unicode=True), end="")
            else:
                config_parser.print_help()

    except ConfigurationError as e:
        print(f"❌ {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
