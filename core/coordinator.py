"""
Session orchestration: modal intents in, storage writes and model streams out.

The coordinator is the only component that knows about all the others. It
runs on the UI event loop; the provider's blocking fragment generator is
advanced on a worker thread with ``asyncio.to_thread`` so key handling keeps
going while a response streams in.
"""

from __future__ import annotations

import asyncio
import os
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from base_classes import (
    APIProvider,
    GenerationOptions,
    MemexError,
    StorageError,
    StreamError,
    UserInputError,
)
from config_manager import THEMES
from core import commands
from core.export_processor import ExportWriter, ProcessedChunk, StreamingExportProcessor
from core.modal_input import Intent, IntentKind, KeyEvent, ModalInputMachine
from core.thread_store import Conversation, ThreadStore
from utils.token_utils import count_tiktoken

_END = object()


class CoordinatorState(Enum):
    IDLE = 'idle'
    AWAITING_RESPONSE = 'awaiting_response'


class ResponseCancelled(Exception):
    """Raised inside the stream loop when quit cancels the in-flight response."""


class SessionCoordinator:
    """
    Drives one interactive session.

    At most one response is in flight at a time; a submit while awaiting is
    dropped, not queued. A thread switch during a response does not abort it:
    the response finishes and is stored in the conversation it started in.
    """

    def __init__(
            self,
            store: ThreadStore,
            provider: APIProvider,
            display: Any,
            config: Any,
            logger: Optional[Any] = None,
            exporter: Optional[ExportWriter] = None,
            token_counter: Callable[[Any, Optional[str]], int] = count_tiktoken,
    ) -> None:
        self.store = store
        self.provider = provider
        self.display = display
        self.config = config
        self.logger = logger
        self.exporter = exporter
        self.token_counter = token_counter

        self.state = CoordinatorState.IDLE
        self.current: Optional[Conversation] = None
        self.thread_list: List[Conversation] = []
        self.search_results: List[Conversation] = []
        self.search_query: Optional[str] = None
        self._search_index = -1
        self._cancel_requested = False
        self._response_conversation_id: Optional[int] = None
        self._streaming_visible = False
        self._tasks: Set[asyncio.Task] = set()

        self.machine = ModalInputMachine(
            view=display,
            dispatch=self.dispatch,
            on_error=display.show_error,
            logger=logger,
            history_size=int(config.get_option('DEFAULT', 'command_history', fallback=100) or 100),
            completer=self.complete_command,
        )

    # --- lifecycle ----------------------------------------------------------
    async def start(self) -> None:
        """Load the thread list and open the most recent conversation, if any."""
        self._refresh_thread_list()
        self._update_status()
        if self.thread_list:
            await self.load_thread(self.thread_list[0].id)
        else:
            self.display.update_title('memex-threads')

    async def drain(self) -> None:
        """Wait for every task spawned by dispatch() to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    @property
    def awaiting(self) -> bool:
        return self.state is CoordinatorState.AWAITING_RESPONSE

    @property
    def pending_tasks(self) -> int:
        return len(self._tasks)

    # --- key and intent routing -------------------------------------------
    def complete_command(self, partial: str) -> List[str]:
        return commands.completions(partial, models=self.provider.list_models())

    def handle_key(self, event: KeyEvent) -> List[Intent]:
        intents = self.machine.handle_key(event)
        self._update_status()
        return intents

    def dispatch(self, intent: Intent) -> None:
        """Route one intent from the modal machine; async work is spawned as a task."""
        kind = intent.kind
        payload = intent.payload
        display = self.display

        if kind is IntentKind.MODE_CHANGED:
            self._update_status()
        elif kind is IntentKind.SCROLL_LINE:
            display.scroll(payload)
        elif kind is IntentKind.SCROLL_HALF_PAGE:
            display.scroll_half_page(payload)
        elif kind is IntentKind.SCROLL_TOP:
            display.scroll_home()
        elif kind is IntentKind.SCROLL_BOTTOM:
            display.scroll_end()
        elif kind is IntentKind.SET_MARK:
            key = payload[0]
            display.show_message(f"Mark '{key}' set")
        elif kind is IntentKind.JUMP_MARK:
            display.scroll_to(payload[1])
        elif kind is IntentKind.YANK_LINE:
            display.copy_to_clipboard(payload)
        elif kind is IntentKind.YANK_SELECTION:
            start, end, text = payload
            display.copy_to_clipboard(text)
            display.show_message(f"Yanked lines {start}-{end}")
        elif kind is IntentKind.DELETE_SELECTION:
            start, end, text = payload
            display.copy_to_clipboard(text)
            display.show_message("Messages are append-only; selection yanked instead")
        elif kind is IntentKind.PASTE:
            if payload and self.logger:
                self.logger.input_detail('paste', {'chars': len(payload)})
        elif kind is IntentKind.QUIT:
            self.quit()
        elif kind is IntentKind.SUBMIT_MESSAGE:
            self._spawn(self.submit(payload))
        elif kind is IntentKind.RUN_COMMAND:
            self._spawn(self.run_command(payload))
        elif kind is IntentKind.RUN_SEARCH:
            self._spawn(self.run_search(payload))
        elif kind is IntentKind.SEARCH_NEXT:
            self._spawn(self.next_search_result(payload, 1))
        elif kind is IntentKind.SEARCH_PREV:
            self._spawn(self.next_search_result(payload, -1))
        elif kind is IntentKind.PREV_THREAD:
            self._spawn(self.navigate(-1))
        elif kind is IntentKind.NEXT_THREAD:
            self._spawn(self.navigate(1))

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._report(exc, 'core.coordinator.task')

    # --- submit flow ---------------------------------------------------------
    async def submit(self, text: str) -> bool:
        """
        Persist a user message and stream the reply.
        Returns False when the message was dropped or the submit aborted.
        """
        text = (text or '').strip()
        if not text:
            return False
        if self.awaiting:
            if self.logger:
                self.logger.warning('core.coordinator', 'submit_dropped', {'reason': 'response in progress'})
            self.display.show_message("A response is still in progress; message not sent")
            return False

        self.state = CoordinatorState.AWAITING_RESPONSE
        self._cancel_requested = False
        self._update_status()
        try:
            try:
                if self.current is None:
                    self.current = self.store.create_conversation()
                    self._refresh_thread_list()
                    self.display.update_title(self.current.title)
                conversation_id = self.current.id
                self.store.append_message(conversation_id, 'user', text)
            except (StorageError, UserInputError) as e:
                self._report(e, 'core.coordinator.submit')
                return False

            self.display.append_message('user', text)
            if self.logger:
                self.logger.messages_event('user_message', {
                    'conversation_id': conversation_id,
                    'chars': len(text),
                })
            history = [
                {'role': m.role, 'content': m.content}
                for m in self.store.get_history(conversation_id)
            ]
            return await self._stream_response(conversation_id, history)
        except MemexError as e:
            self._report(e, 'core.coordinator.submit')
            return False
        finally:
            self.state = CoordinatorState.IDLE
            self._cancel_requested = False
            self._response_conversation_id = None
            self._refresh_thread_list()
            self._update_status()

    def generation_options(self) -> GenerationOptions:
        return GenerationOptions(
            model=self.config.model,
            temperature=self.config.temperature,
            max_tokens=self.config.max_tokens,
            stream=bool(self.config.get_option('DEFAULT', 'stream', fallback=True)),
        )

    async def _stream_response(self, conversation_id: int, history: List[Dict[str, str]]) -> bool:
        options = self.generation_options()
        processor = StreamingExportProcessor(logger=self.logger)
        shown: List[str] = []
        self._response_conversation_id = conversation_id
        self._streaming_visible = True
        self.provider.reset_usage()
        self.display.begin_streaming_message()

        fragments = None
        in_flight = False  # a worker thread is inside next(fragments)
        try:
            if options.stream:
                fragments = self.provider.stream_chat(history, options)
            else:
                reply = await asyncio.to_thread(self.provider.chat, history, options)
                fragments = iter([reply] if reply else [])
            while True:
                if self._cancel_requested:
                    raise ResponseCancelled()
                in_flight = True
                fragment = await asyncio.to_thread(next, fragments, _END)
                in_flight = False
                if fragment is _END:
                    break
                if self._cancel_requested:
                    raise ResponseCancelled()
                self._handle_chunk(conversation_id, processor.feed(fragment), shown)
            self._handle_chunk(conversation_id, processor.finish(), shown)
        except asyncio.CancelledError:
            self._cancel_requested = True
            if self.logger:
                self.logger.messages_event('response_cancelled', {
                    'conversation_id': conversation_id,
                    'chars': len(''.join(shown)),
                    'task_cancelled': True,
                })
            raise
        except ResponseCancelled:
            if self.logger:
                self.logger.messages_event('response_cancelled', {
                    'conversation_id': conversation_id,
                    'chars': len(''.join(shown)),
                })
            return False
        except StreamError as e:
            self._report(e, 'core.coordinator.stream')
            return False
        except StorageError as e:
            # Export write failed; the response itself is abandoned like any stream failure
            self._report(e, 'core.coordinator.export')
            return False
        finally:
            # A generator still executing on the worker thread cannot be closed here
            close = getattr(fragments, 'close', None)
            if close and not in_flight:
                close()
            if self._streaming_visible:
                self.display.end_streaming_message()
            self._streaming_visible = False

        content = ''.join(shown)
        token_count = self._token_count(content, options.model)
        try:
            self.store.append_message(
                conversation_id,
                'assistant',
                content,
                model=options.model,
                token_count=token_count,
            )
        except (StorageError, UserInputError) as e:
            self._report(e, 'core.coordinator.persist')
            return False
        if self.logger:
            self.logger.messages_event('assistant_message', {
                'conversation_id': conversation_id,
                'chars': len(content),
                'tokens': token_count,
            })
            self.logger.usage({'model': options.model, **(self.provider.get_usage() or {})})
        return True

    def _handle_chunk(self, conversation_id: int, chunk: ProcessedChunk, shown: List[str]) -> None:
        if chunk.display:
            shown.append(chunk.display)
            if self._streaming_visible:
                self.display.update_streaming_message(chunk.display)
        for exported in chunk.files:
            if self.exporter is None:
                if self.logger:
                    self.logger.warning('core.coordinator', 'export_skipped', {'name': exported.name})
                continue
            self.exporter.write(conversation_id, exported)
            if self._streaming_visible:
                self.display.show_message(f"[File saved: {exported.filename}]")

    def _token_count(self, content: str, model: str) -> int:
        usage = self.provider.get_usage() or {}
        total = usage.get('total_tokens')
        if total:
            return int(total)
        return self.token_counter(content, model)

    # --- navigation ----------------------------------------------------------
    async def load_thread(self, conversation_id: int) -> Conversation:
        """Make ``conversation_id`` current and re-render its history."""
        conversation = self.store.get_conversation(conversation_id)
        history = self.store.get_history(conversation.id)
        if self.awaiting and self._streaming_visible:
            # The in-flight response keeps running but stops drawing into this view
            self.display.end_streaming_message()
            self._streaming_visible = False
        self.current = conversation
        self.display.clear_chat()
        for message in history:
            self.display.append_message(message.role, message.content)
        self.display.update_title(conversation.title)
        if self.search_query:
            self.display.update_thread_list(self.search_results, conversation.id)
        else:
            self._refresh_thread_list()
        self._update_status()
        if self.logger:
            self.logger.command_event('thread_loaded', {
                'conversation_id': conversation.id,
                'messages': len(history),
            })
        return conversation

    async def navigate(self, delta: int) -> Optional[Conversation]:
        """Move to the previous (-1) or next (+1) conversation in the fetched list."""
        if not self.thread_list:
            self._refresh_thread_list()
        if not self.thread_list:
            self.display.show_message("No conversations yet")
            return None
        ids = [c.id for c in self.thread_list]
        if self.current is None or self.current.id not in ids:
            index = 0
        else:
            index = ids.index(self.current.id) + delta
            if index < 0 or index >= len(ids):
                return None
        return await self.load_thread(ids[index])

    def _with_branches(self, roots: List[Conversation]) -> List[Conversation]:
        """Expand the tree holding the current conversation in place of its root entry."""
        if self.current is None:
            return roots
        path = self.current.path_ids
        root_id = path[0] if path else self.current.id
        expanded: List[Conversation] = []
        for conversation in roots:
            if conversation.id == root_id:
                tree = self.store.get_thread(root_id)
                # depth-first, siblings in creation order
                expanded.extend(sorted(tree, key=lambda c: c.path_ids + [c.id]))
            else:
                expanded.append(conversation)
        return expanded

    def _refresh_thread_list(self) -> None:
        limit = int(self.config.get_option('DEFAULT', 'recent_limit', fallback=50) or 50)
        try:
            self.thread_list = self._with_branches(self.store.recent_conversations(limit))
        except StorageError as e:
            self._report(e, 'core.coordinator.threads')
            return
        if not self.search_query:
            self.display.update_thread_list(self.thread_list, self.current.id if self.current else None)

    # --- search -------------------------------------------------------------
    async def run_search(self, query: str) -> List[Conversation]:
        try:
            results = self.store.search(query)
        except MemexError as e:
            self._report(e, 'core.coordinator.search')
            return []
        self.search_query = query
        self.search_results = results
        self._search_index = -1
        self.display.update_thread_list(results, self.current.id if self.current else None)
        self.display.show_message(f"{len(results)} conversation(s) match '{query}'")
        if self.logger:
            self.logger.command_event('search', {'query': query, 'results': len(results)})
        return results

    async def next_search_result(self, query: str, step: int) -> Optional[Conversation]:
        if query != self.search_query:
            await self.run_search(query)
        if not self.search_results:
            self.display.show_message(f"No matches for '{query}'")
            return None
        self._search_index = (self._search_index + step) % len(self.search_results)
        return await self.load_thread(self.search_results[self._search_index].id)

    def clear_search(self) -> None:
        self.search_query = None
        self.search_results = []
        self._search_index = -1
        self.display.update_thread_list(self.thread_list, self.current.id if self.current else None)

    # --- commands -------------------------------------------------------------
    async def run_command(self, text: str) -> None:
        try:
            parsed = commands.parse_command(text)
            if self.logger:
                self.logger.command_event('command', {'name': parsed.name, 'raw': parsed.raw})
            handler = getattr(self, f"_cmd_{parsed.name}")
            result = handler(parsed)
            if asyncio.iscoroutine(result):
                await result
        except MemexError as e:
            self._report(e, 'core.coordinator.command')

    def quit(self) -> None:
        if self.awaiting:
            self._cancel_requested = True
            if self.logger:
                self.logger.messages_event('cancel_requested', {
                    'conversation_id': self._response_conversation_id,
                })
        self.display.exit_app()

    def _cmd_quit(self, parsed: commands.ParsedCommand) -> None:
        self.quit()

    def _cmd_help(self, parsed: commands.ParsedCommand) -> None:
        topic = parsed.args[0] if parsed.args else None
        self.display.show_help(commands.help_text(topic))

    def _cmd_write(self, parsed: commands.ParsedCommand) -> None:
        if self.current is None:
            raise UserInputError("No conversation to write")
        if parsed.args:
            path = parsed.args[0]
        else:
            root = self.config.get_option('DEFAULT', 'export_dir', fallback='.') or '.'
            path = os.path.join(str(root), f"conversation-{self.current.id}.md")
        saved = self.store.export_conversation(self.current.id, path)
        self.display.show_message(f"Conversation saved to {saved}")

    def _cmd_model(self, parsed: commands.ParsedCommand) -> None:
        if not parsed.args:
            models = self.provider.list_models()
            listing = f" Available: {', '.join(models)}" if models else ''
            self.display.show_message(f"Current model: {self.config.model}.{listing}")
            return
        name = parsed.args[0]
        self.config.set_option('DEFAULT', 'default_model', name)
        if self.logger:
            self.logger.settings({'default_model': name})
        self._update_status()
        self.display.show_message(f"Model set to {name}")

    def _cmd_set(self, parsed: commands.ParsedCommand) -> None:
        option = parsed.subcommand
        if option is None or not parsed.args:
            raise UserInputError(f"Usage: {commands.COMMANDS['set']['usage']}")
        value = parsed.args[0]
        if option == 'temperature':
            temperature = commands.parse_float(value, 'temperature')
            if not 0 <= temperature <= 2:
                raise UserInputError("temperature must be between 0 and 2")
            self.config.set_option('DEFAULT', 'temperature', temperature)
            shown = temperature
        elif option == 'max_tokens':
            max_tokens = commands.parse_int(value, 'max_tokens')
            if max_tokens < 1:
                raise UserInputError("max_tokens must be greater than 0")
            self.config.set_option('DEFAULT', 'max_tokens', max_tokens)
            shown = max_tokens
        else:
            theme = value.lower()
            if theme not in THEMES:
                raise UserInputError(f"Unknown theme '{value}'. Available: {', '.join(THEMES)}")
            self.config.set_option('DEFAULT', 'theme', theme)
            self.display.set_theme(theme)
            shown = theme
        if self.logger:
            self.logger.settings({option: shown})
        self._update_status()
        self.display.show_message(f"{option} set to {shown}")

    async def _cmd_search(self, parsed: commands.ParsedCommand) -> None:
        query = parsed.rest
        if not query:
            self.clear_search()
            return
        await self.run_search(query)

    async def _cmd_thread(self, parsed: commands.ParsedCommand) -> None:
        sub = parsed.subcommand
        if sub is None and parsed.args:
            await self.load_thread(commands.parse_int(parsed.args[0], 'thread id'))
        elif sub in (None, 'list'):
            self.clear_search()
            self._refresh_thread_list()
            lines = [
                f"{c.id:>5}  {'  ' * c.depth}{c.title}  ({c.message_count} messages)"
                for c in self.thread_list
            ]
            self.display.show_message('\n'.join(lines) if lines else "No conversations yet")
        elif sub == 'new':
            title = ' '.join(parsed.args) or None
            conversation = self.store.create_conversation(title=title)
            self._refresh_thread_list()
            await self.load_thread(conversation.id)
        elif sub == 'delete':
            if not parsed.args:
                raise UserInputError("Usage: :thread delete <id>")
            conversation_id = commands.parse_int(parsed.args[0], 'thread id')
            if self.awaiting and conversation_id == self._response_conversation_id:
                raise UserInputError("Cannot delete a conversation while its response is streaming")
            self.store.delete_conversation(conversation_id)
            if self.current and self.current.id == conversation_id:
                self.current = None
                self.display.clear_chat()
                self.display.update_title('memex-threads')
            self._refresh_thread_list()
            self.display.show_message(f"Deleted thread {conversation_id}")

    async def _cmd_branch(self, parsed: commands.ParsedCommand) -> None:
        if self.current is None:
            raise UserInputError("No conversation to branch from")
        title = parsed.rest or f"{self.current.title} (branch)"
        child = self.store.create_conversation(title=title, parent_id=self.current.id)
        await self.load_thread(child.id)
        self.display.show_message(f"Branched thread {child.id} from {child.parent_id}")

    # --- reporting ---------------------------------------------------------------
    def _update_status(self) -> None:
        self.display.update_status(
            mode=self.machine.status_text(),
            state=self.state.value,
            model=self.config.model,
            thread=self.current.id if self.current else None,
        )

    def _report(self, exc: BaseException, where: str) -> None:
        if self.logger:
            self.logger.error(where, exc)
        message = exc.user_message if isinstance(exc, MemexError) else f"Unexpected error: {exc}"
        self.display.show_error(message)
