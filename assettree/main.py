# main.py
import logging
import click

from assettree.manager import TreeManager
from assettree.models import DatapointInput, Label
from assettree.renderer import Renderer
from assettree.storage.base import FileStorage
from assettree.utils import copy_to_clipboard, new_node_id

DEFAULT_STORE = ".assettree"


def _require_node(manager: TreeManager, node_id: str):
    node = manager.find(node_id)
    if node is None:
        click.secho(f"No node with id '{node_id}'", fg="red", err=True)
        raise click.exceptions.Exit(1)
    return node


def _parse_label(text: str) -> Label:
    key, sep, value = text.partition("=")
    if not sep or not key:
        raise click.BadParameter(f"expected KEY=VALUE, got '{text}'")
    return Label(key=key, value=value)


@click.group()
@click.option("-s", "--store", "store_dir", envvar="ASSETTREE_STORE", default=DEFAULT_STORE,
              type=click.Path(file_okay=False), show_default=True,
              help="Directory holding the persisted tree and selection.")
@click.option("-v", "--verbose", is_flag=True, help="Log storage and command details.")
@click.pass_context
def cli(ctx, store_dir, verbose):
    """
    Edit a hierarchical tree of folders, assets and datapoints with key/value labels.

    The tree and the current selection are kept as JSON files in the store
    directory, so several shells can work on the same tree.
    """
    logging.basicConfig(
        format="%(levelname)s %(name)s: %(message)s",
        level=logging.DEBUG if verbose else logging.WARNING,
    )
    manager = TreeManager(FileStorage(store_dir))
    ctx.obj = manager
    ctx.call_on_close(manager.close)


@cli.command()
@click.option("-q", "--query", default="", help="Only show nodes matching this text (name or label).")
@click.option("--ids", "show_ids", is_flag=True, help="Show node ids.")
@click.pass_obj
def show(manager, query, show_ids):
    """Print the tree; the selected node is marked with '*'."""
    nodes = manager.filtered(query)
    if not nodes:
        click.echo("(empty)" if not query.strip() else f"No nodes match '{query}'")
        return
    click.echo(Renderer(nodes, show_ids=show_ids, selected_id=manager.selected_id).render_tree())


@cli.command()
@click.argument("node_id")
@click.option("-c", "--copy", "copy_clipboard", is_flag=True,
              help="Copy the path to clipboard (Linux: wl-copy/xclip/xsel).")
@click.pass_obj
def path(manager, node_id, copy_clipboard):
    """Print the slash-separated path from the root to NODE_ID."""
    _require_node(manager, node_id)
    path_string = manager.path_string(node_id)
    click.echo(path_string)
    if copy_clipboard:
        if copy_to_clipboard(path_string):
            click.secho("[Copied to clipboard]", err=True)
        else:
            click.secho("[Failed to copy to clipboard - install wl-clipboard or xclip or xsel]", fg="yellow", err=True)


@cli.command()
@click.argument("node_id")
@click.pass_obj
def labels(manager, node_id):
    """Print the labels of NODE_ID and the labels inherited along its path."""
    node = _require_node(manager, node_id)
    click.echo(Renderer.render_labels(node.labels) or "(no labels)")
    for item, inherited in manager.inherited_labels(node_id):
        click.echo(f"From {item.name}:")
        click.echo(Renderer.render_labels(inherited, indent="  "))


@cli.command()
@click.argument("node_id")
@click.pass_obj
def select(manager, node_id):
    """Make NODE_ID the current selection."""
    if not manager.navigate(node_id):
        click.secho(f"No node with id '{node_id}'", fg="red", err=True)
        raise click.exceptions.Exit(1)


@cli.command()
@click.pass_obj
def mkdir(manager):
    """Create a folder inside the selected folder (or the first root of an empty tree)."""
    new_id = manager.create_folder()
    if new_id is None:
        click.secho("Select a folder first", fg="yellow", err=True)
        raise click.exceptions.Exit(1)
    click.echo(new_id)


@cli.command("add-asset")
@click.argument("parent_id")
@click.argument("name")
@click.option("-d", "--datapoint", "datapoints", multiple=True, help="Datapoint name; may be repeated.")
@click.pass_obj
def add_asset(manager, parent_id, name, datapoints):
    """Create asset NAME inside folder PARENT_ID."""
    asset_id = manager.create_asset(
        parent_id, name,
        [DatapointInput(id=new_node_id("datapoint"), name=datapoint) for datapoint in datapoints],
    )
    if asset_id is None:
        click.secho(f"'{parent_id}' is not a folder", fg="red", err=True)
        raise click.exceptions.Exit(1)
    click.echo(asset_id)


@cli.command()
@click.argument("node_id")
@click.argument("name")
@click.pass_obj
def rename(manager, node_id, name):
    """Rename NODE_ID."""
    if not name.strip():
        raise click.BadParameter("name cannot be empty", param_hint="NAME")
    _require_node(manager, node_id)
    manager.rename(node_id, name)


@cli.command()
@click.argument("node_ids", nargs=-1, required=True)
@click.pass_obj
def rm(manager, node_ids):
    """Delete nodes and everything below them."""
    manager.delete(node_ids)


@cli.command()
@click.argument("node_ids", nargs=-1, required=True)
@click.option("--to", "parent_id", default=None, help="Destination parent id.")
@click.option("--root", is_flag=True, help="Move to the root level.")
@click.option("-i", "--index", default=0, show_default=True, help="Position among the new siblings.")
@click.pass_obj
def mv(manager, node_ids, parent_id, root, index):
    """Move nodes under another parent."""
    if root == (parent_id is not None):
        raise click.UsageError("give exactly one of --to PARENT_ID or --root")
    if not manager.move(list(node_ids), None if root else parent_id, index):
        click.secho("Move rejected", fg="yellow", err=True)
        raise click.exceptions.Exit(1)


@cli.command()
@click.argument("node_id")
@click.argument("pairs", nargs=-1)
@click.pass_obj
def label(manager, node_id, pairs):
    """Replace the labels of NODE_ID with KEY=VALUE pairs (none clears them)."""
    _require_node(manager, node_id)
    new_labels = [_parse_label(pair) for pair in pairs]
    keys = [new_label.key for new_label in new_labels]
    if len(set(keys)) != len(keys):
        raise click.BadParameter("label keys must be unique", param_hint="PAIRS")
    manager.update_labels(node_id, new_labels)


if __name__ == "__main__":
    cli()
