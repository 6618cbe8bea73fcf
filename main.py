import os

import click

from base_classes import MemexError
from config_manager import ConfigManager, init_config
from session import SessionBuilder


@click.group(invoke_without_command=True)
@click.option('-c', '--conf', default=None, help='Path to a custom configuration file')
@click.option('-d', '--db', default=None, help='Path to the conversations database')
@click.option('-m', '--model', default='', help='Model to use for responses')
@click.option('-p', '--provider', default=None, help='Provider section to use (OpenAI, Mock)')
@click.option('--debug', default=False, is_flag=True, help='Log every aspect at detail level')
@click.pass_context
def cli(ctx, conf, db, model, provider, debug):
    """
    the main entry point for the CLI click interface
    """
    ctx.ensure_object(dict)  # set up the context object to be passed around

    # init must work before any config exists
    if ctx.invoked_subcommand == 'init':
        return

    try:
        config_manager = ConfigManager(conf)
    except MemexError as e:
        raise click.ClickException(e.user_message)
    ctx.obj['CONFIG_MANAGER'] = config_manager
    ctx.obj['BUILDER'] = SessionBuilder(config_manager)
    ctx.obj['DEBUG'] = debug

    # Build session options from CLI parameters
    options = {}
    if db:
        options['db'] = db
    if model:
        options['model'] = model
    if provider:
        options['provider'] = provider
    ctx.obj['OPTIONS'] = options

    if ctx.invoked_subcommand is None:
        ctx.invoke(tui)


def _build_session(ctx):
    builder = ctx.obj['BUILDER']
    try:
        return builder.build(debug=ctx.obj.get('DEBUG', False), **ctx.obj.get('OPTIONS', {}))
    except MemexError as e:
        raise click.ClickException(e.user_message)


@cli.command()
@click.pass_context
def tui(ctx):
    """Start the interactive terminal interface (default)"""
    session = _build_session(ctx)
    try:
        from tui.app import run_app
        run_app(session)
    finally:
        session.close()


@cli.command()
@click.option('--path', default=None, help='Where to write the config (defaults to [DEFAULT] user_config)')
@click.option('--force', is_flag=True, default=False, help='Overwrite an existing config')
def init(path, force):
    """Write a starter user configuration file"""
    if path is None:
        path = ConfigManager.fix_values(_bundled_user_config_path())
    if init_config(path, overwrite=force):
        print(f"Wrote default configuration to {path}")
    else:
        print(f"Configuration already exists at {path} (use --force to overwrite)")


def _bundled_user_config_path() -> str:
    from configparser import ConfigParser
    config = ConfigParser()
    config.read(os.path.join(os.path.dirname(os.path.abspath(__file__)), 'config.ini'))
    return config['DEFAULT'].get('user_config', '~/.config/memex-threads/config.ini')


@cli.command()
@click.option('-n', '--limit', type=int, default=None, help='Number of conversations to show')
@click.pass_context
def threads(ctx, limit):
    """List recent top-level conversations"""
    session = _build_session(ctx)
    try:
        limit = limit or int(session.config.get_option('DEFAULT', 'recent_limit', fallback=50))
        conversations = session.store.recent_conversations(limit)
        if not conversations:
            print("No conversations yet")
        for c in conversations:
            last = c.last_message_at or c.updated_at
            print(f"{c.id:>5}  {c.title}  ({c.message_count} messages, last {last})")
    except MemexError as e:
        raise click.ClickException(e.user_message)
    finally:
        session.close()


@cli.command()
@click.argument('query')
@click.pass_context
def search(ctx, query):
    """Search conversation titles and message content"""
    session = _build_session(ctx)
    try:
        results = session.store.search(query)
        if not results:
            print(f"No matches for '{query}'")
        for c in results:
            print(f"{c.id:>5}  {c.title}  (updated {c.updated_at})")
    except MemexError as e:
        raise click.ClickException(e.user_message)
    finally:
        session.close()


@cli.command()
@click.argument('conversation_id', type=int)
@click.argument('file', required=False)
@click.pass_context
def export(ctx, conversation_id, file):
    """Export a conversation as Markdown"""
    session = _build_session(ctx)
    try:
        if file is None:
            root = session.config.get_option('DEFAULT', 'export_dir', fallback='.')
            file = os.path.join(str(root), f"conversation-{conversation_id}.md")
        path = session.store.export_conversation(conversation_id, file)
        print(f"Conversation saved to {path}")
    except MemexError as e:
        raise click.ClickException(e.user_message)
    finally:
        session.close()


@cli.command()
@click.pass_context
def list_models(ctx):
    """
    list the configured models
    """
    config_manager = ctx.obj['CONFIG_MANAGER']
    default = ctx.obj.get('OPTIONS', {}).get('model') or config_manager.create_session_config().model
    for name in config_manager.list_models():
        print(f'{name} (default)' if name == default else name)


# take care of business
if __name__ == "__main__":
    cli(obj={})
