"""Sync commands: push, pull, clone, delete-file."""

from __future__ import annotations

import os

import click
from rich.markup import escape

from ..errors import KBSyncError
from ._common import LOCATIONS, build_engine, console, fail


def register_sync_commands(main: click.Group) -> None:
    """Register push, pull, clone and delete-file on the main group."""

    project_option = click.option(
        "--project",
        "-p",
        default=os.getcwd,
        type=click.Path(file_okay=False),
        help="Project directory (default: current directory).",
    )
    dist_option = click.option(
        "--dist", is_flag=True, help="Transfer built artifacts (cache/) instead of src/."
    )

    @main.command("push")
    @click.argument("location", required=False, default="origin", type=click.Choice(LOCATIONS))
    @click.argument("target_file", required=False)
    @project_option
    @dist_option
    def push(location, target_file, project, dist):
        """Upload the project (or one file) to the remote service."""
        engine = build_engine(project)
        try:
            result = engine.push(location, target_file, dist=dist)
        except KBSyncError as exc:
            fail(exc, "push")

        if target_file and result.settings:
            console.print("KB Settings updated.")
        elif target_file:
            console.print(f"[green]File {escape(result.files[0])} uploaded successfully.[/]")
        else:
            console.print(
                f"[green]KB update complete:[/] {result.count} file(s) uploaded "
                f"for [cyan]{escape(result.kb_id)}[/]"
            )

    @main.command("pull")
    @click.argument("location", required=False, default="origin", type=click.Choice(LOCATIONS))
    @click.argument("target_file", required=False)
    @project_option
    @dist_option
    def pull(location, target_file, project, dist):
        """Download the project (or one file) from the remote service."""
        engine = build_engine(project)
        try:
            result = engine.pull(location, target_file, dist=dist)
        except KBSyncError as exc:
            fail(exc, "pull")

        if location == "cache" or dist:
            console.print(f"[green]Dist files downloaded![/] {result.count} file(s)")
        elif target_file:
            console.print(f"[green]File {escape(target_file)} synchronized successfully.[/]")
        else:
            console.print(
                "[green]Synchronization complete:[/] "
                f"all changes downloaded ({result.count} file(s))."
            )

    @main.command("clone")
    @click.argument("kb_id")
    @project_option
    def clone(kb_id, project):
        """Initialize the project directory from an existing remote KB."""
        engine = build_engine(project)
        console.print(f"Cloning KB [cyan]{escape(kb_id)}[/] ...")
        try:
            result = engine.clone(kb_id)
        except KBSyncError as exc:
            fail(exc, "clone")
        console.print(f"[green]Cloning complete![/] {result.count} file(s)")

    @main.command("delete-file")
    @click.argument("kb_id")
    @click.argument("file_path")
    @project_option
    def delete_file(kb_id, file_path, project):
        """Delete one file (e.g. Events/onRequest.js) from a remote KB."""
        engine = build_engine(project)
        try:
            name = engine.delete_file(kb_id, file_path)
        except KBSyncError as exc:
            fail(exc, "delete-file")
        console.print(
            f"[green]File {escape(name)} in KB with ID {escape(kb_id)} has been deleted.[/]"
        )
