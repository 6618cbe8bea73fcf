"""Command-mode registry, parser and completion helpers."""

from __future__ import annotations

import shlex
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from base_classes import UserInputError
from config_manager import THEMES

# name -> metadata used for parsing, :help and completion
COMMANDS: Dict[str, Dict[str, Any]] = {
    'quit': {
        'aliases': ('q', 'exit'),
        'usage': ':quit',
        'help': 'Quit the application (cancels a response in progress)',
        'category': 'general',
    },
    'write': {
        'aliases': ('w', 'save'),
        'usage': ':write [filename]',
        'help': 'Export the current conversation as Markdown',
        'category': 'general',
    },
    'help': {
        'aliases': ('h',),
        'usage': ':help [command]',
        'help': 'Show available commands or help for one command',
        'category': 'general',
    },
    'model': {
        'aliases': ('m',),
        'usage': ':model <name>',
        'help': 'Switch the model used for new responses',
        'category': 'settings',
        'complete': 'models',
    },
    'set': {
        'aliases': (),
        'usage': ':set <option> <value>',
        'help': 'Set temperature (0-2), max_tokens (>0) or theme',
        'category': 'settings',
        'sub': {
            'temperature': {'help': 'Sampling temperature between 0 and 2'},
            'max_tokens': {'help': 'Maximum tokens per response'},
            'theme': {'help': 'Color theme', 'values': THEMES},
        },
    },
    'thread': {
        'aliases': ('t',),
        'usage': ':thread [list|new|delete <id>|<id>]',
        'help': 'List, create, delete or switch conversations',
        'category': 'threads',
        'sub': {
            'list': {'help': 'List recent conversations'},
            'new': {'help': 'Start a new top-level conversation'},
            'delete': {'help': 'Delete a conversation without children'},
        },
    },
    'branch': {
        'aliases': ('b',),
        'usage': ':branch [title]',
        'help': 'Start a child conversation of the current one',
        'category': 'threads',
    },
    'search': {
        'aliases': ('s',),
        'usage': ':search <query>',
        'help': 'Search message content across all conversations',
        'category': 'threads',
    },
}

ALIASES: Dict[str, str] = {
    alias: name for name, meta in COMMANDS.items() for alias in meta.get('aliases', ())
}


@dataclass
class ParsedCommand:
    name: str
    subcommand: Optional[str] = None
    args: List[str] = field(default_factory=list)
    raw: str = ''

    @property
    def rest(self) -> str:
        """Everything after the command name, joined back into one string."""
        parts = ([self.subcommand] if self.subcommand else []) + self.args
        return ' '.join(parts)


def resolve_name(name: str) -> Optional[str]:
    name = (name or '').lower()
    if name in COMMANDS:
        return name
    return ALIASES.get(name)


def parse_command(text: str) -> ParsedCommand:
    raw = (text or '').strip()
    body = raw[1:] if raw.startswith(':') else raw
    try:
        tokens = shlex.split(body, posix=True)
    except ValueError:
        tokens = body.split()
    if not tokens:
        raise UserInputError("Empty command")

    name = resolve_name(tokens[0])
    if name is None:
        raise UserInputError(f"Unknown command: {tokens[0]}. Type :help for a list of commands")

    rest = tokens[1:]
    subcommand = None
    subs = COMMANDS[name].get('sub')
    if subs and rest and rest[0].lower() in subs:
        subcommand = rest[0].lower()
        rest = rest[1:]
    return ParsedCommand(name=name, subcommand=subcommand, args=rest, raw=raw)


def parse_int(value: Any, what: str = 'value') -> int:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        raise UserInputError(f"Invalid {what}: {value!r} is not a number") from None


def parse_float(value: Any, what: str = 'value') -> float:
    try:
        return float(str(value).strip())
    except (TypeError, ValueError):
        raise UserInputError(f"Invalid {what}: {value!r} is not a number") from None


def help_text(command: Optional[str] = None) -> str:
    if command:
        name = resolve_name(command.lstrip(':'))
        if name is None:
            raise UserInputError(f"No help for unknown command: {command}")
        meta = COMMANDS[name]
        lines = [meta['usage'], f"  {meta['help']}"]
        if meta.get('aliases'):
            lines.append("  aliases: " + ', '.join(f":{a}" for a in meta['aliases']))
        for sub, info in meta.get('sub', {}).items():
            lines.append(f"  {sub:<12} {info['help']}")
        return '\n'.join(lines)

    by_category: Dict[str, List[str]] = {}
    for name, meta in COMMANDS.items():
        by_category.setdefault(meta['category'], []).append(f"  {meta['usage']:<38} {meta['help']}")
    lines = ['Commands:']
    for category, entries in by_category.items():
        lines.append(f"[{category}]")
        lines.extend(entries)
    lines.extend([
        '',
        'Keys (normal mode):',
        '  i insert  v visual  : command  / search  n/N next/prev match',
        '  j/k scroll  ctrl+d/ctrl+u half page  gg/G top/bottom',
        '  H/L previous/next thread  m<a-z> set mark  \'<a-z> jump to mark',
        '  yy yank line  p paste  ctrl+c quit',
    ])
    return '\n'.join(lines)


def completions(partial: str, models: Optional[List[str]] = None) -> List[str]:
    """Completion candidates for a ':'-prefixed command line."""
    text = (partial or '').lstrip(':')
    tokens = text.split(' ')
    if len(tokens) == 1:
        prefix = tokens[0].lower()
        return sorted(f":{name}" for name in COMMANDS if name.startswith(prefix))

    name = resolve_name(tokens[0])
    if name is None:
        return []
    meta = COMMANDS[name]
    head = f":{tokens[0]}"
    if len(tokens) == 2:
        prefix = tokens[1]
        if meta.get('complete') == 'models':
            values = list(models or [])
        else:
            values = list(meta.get('sub', {}).keys())
        return [f"{head} {v}" for v in values if v.startswith(prefix)]
    if len(tokens) == 3:
        sub = meta.get('sub', {}).get(tokens[1].lower(), {})
        values = sub.get('values', ())
        return [f"{head} {tokens[1]} {v}" for v in values if v.startswith(tokens[2])]
    return []
