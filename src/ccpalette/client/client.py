"""Command-line entry point for the palette."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
import uuid
from pathlib import Path

from ccpalette.client.app import PaletteApp
from ccpalette.client.display import print_commands, print_notice, status_line
from ccpalette.client.repl import interactive_loop
from ccpalette.errors import CommandNotFound
from ccpalette.log_utils import build_log_config, configure_logging, log_context
from ccpalette.settings import load_settings

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ccpalette",
        description="Slash-command palette and session view for the CC client.",
    )
    parser.add_argument("--session", help="Session id to enter (default: a new one).")
    parser.add_argument("--project", type=Path, help="Project directory for custom commands (default: cwd).")
    parser.add_argument("--resync", action="store_true", help="Force a sync with the upstream client first.")
    parser.add_argument("--list-commands", action="store_true", help="Print the command registry and exit.")
    parser.add_argument("--pin-command", metavar="NAME", help="Pin a command so upstream syncs keep it.")
    parser.add_argument("--unpin-command", metavar="NAME", help="Remove a command pin.")
    parser.add_argument("--save-command", metavar="NAME", help="Write a custom command file, then resync.")
    body = parser.add_mutually_exclusive_group()
    body.add_argument("--command-body", metavar="TEXT", help="Markdown body for --save-command.")
    body.add_argument("--command-file", type=Path, metavar="PATH", help="Read the --save-command body from a file.")
    parser.add_argument("--delete-command", metavar="NAME", help="Delete a custom command file, then resync.")
    parser.add_argument(
        "--scope",
        choices=("project", "user"),
        default="project",
        help="Where --save-command/--delete-command act (default: project).",
    )
    parser.add_argument("--namespace", help="Namespace for --save-command (a:b becomes /a:b:NAME).")
    parser.add_argument("--description", help="Frontmatter description for --save-command.")
    model = parser.add_mutually_exclusive_group()
    model.add_argument("--pin-model", metavar="ID", help="Use this model instead of the upstream's.")
    model.add_argument("--unpin-model", action="store_true", help="Follow the upstream client's model again.")
    parser.add_argument(
        "--agent",
        dest="agent_program",
        help="Launch the upstream client as an ACP agent (remaining args are passed to it).",
    )
    parser.add_argument("agent_args", nargs=argparse.REMAINDER, help=argparse.SUPPRESS)
    return parser


async def _edit_custom_commands(app: PaletteApp, args: argparse.Namespace) -> bool:
    """Save or delete custom command files, then resync so the registry sees the change."""
    store = app.engine.local_commands
    if not (args.save_command or args.delete_command):
        return False
    if store is None:
        print_notice("[custom commands are not available]", style="red")
        return True
    changed = False
    if args.save_command:
        try:
            content = args.command_file.read_text(encoding="utf-8") if args.command_file else args.command_body
            if not content:
                raise ValueError("--save-command needs --command-body or --command-file")
            saved = store.save(
                args.scope,
                args.save_command,
                content,
                namespace=args.namespace,
                description=args.description,
            )
            print_notice(f"[saved {saved.full_command} ({args.scope})]")
            changed = True
        except (OSError, ValueError) as exc:
            print_notice(f"[cannot save /{args.save_command}: {exc}]", style="red")
    if args.delete_command:
        try:
            path = store.delete(args.delete_command, args.scope)
            print_notice(f"[deleted {path}]")
            changed = True
        except (OSError, ValueError) as exc:
            print_notice(f"[cannot delete /{args.delete_command}: {exc}]", style="red")
    if changed:
        await app.resync(force=True)
    return True


async def _apply_admin_flags(app: PaletteApp, args: argparse.Namespace) -> bool:
    """Handle the one-shot flags; returns True when something was done."""
    acted = await _edit_custom_commands(app, args)
    if args.pin_command:
        try:
            pinned = app.registry.pin(args.pin_command)
            print_notice(f"[pinned {pinned.full_command} v{pinned.version}]")
        except CommandNotFound as exc:
            print_notice(f"[{exc}]", style="red")
        acted = True
    if args.unpin_command:
        removed = app.engine.unpin_command(args.unpin_command)
        print_notice(f"[unpinned /{args.unpin_command}]" if removed else f"[/{args.unpin_command} was not pinned]")
        acted = True
    if args.pin_model:
        selection = app.engine.pin_model(args.pin_model)
        print_notice(f"[model pinned to {selection.model_id}]")
        acted = True
    if args.unpin_model:
        snapshot = await app.engine.unpin_model()
        print_notice(f"[following upstream model] {status_line(snapshot)}")
        acted = True
    if args.list_commands:
        print_commands(app.registry)
        acted = True
    return acted


async def main(argv: list[str]) -> int:
    parser = build_parser()
    args = parser.parse_args(argv[1:])
    if args.agent_args and not args.agent_program:
        parser.error(f"unrecognized arguments: {' '.join(args.agent_args)}")
    configure_logging(build_log_config())

    settings = load_settings(project_dir=args.project or Path.cwd())
    app = PaletteApp.build(settings, agent_program=args.agent_program, agent_args=args.agent_args)
    session_id = args.session or uuid.uuid4().hex[:12]

    with log_context(session_id=session_id):
        try:
            await app.start(background=False)
            if args.resync:
                await app.resync(force=True)
            if await _apply_admin_flags(app, args):
                return 0
            app.engine.start_background_resync()
            await interactive_loop(app, session_id)
            return 0
        except KeyboardInterrupt:
            return 130
        finally:
            await app.close()


def run() -> None:
    try:
        raise SystemExit(asyncio.run(main(sys.argv)))
    except KeyboardInterrupt:
        raise SystemExit(130)
