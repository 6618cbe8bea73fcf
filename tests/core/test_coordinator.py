from __future__ import annotations

import asyncio
import os
import sys
import threading
from configparser import ConfigParser

import pytest

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir, os.pardir))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from base_classes import StorageError, StreamError
from config_manager import SessionConfig
from core.coordinator import CoordinatorState, SessionCoordinator
from core.export_processor import ExportWriter
from core.modal_input import KeyEvent, Mode
from core.thread_store import ThreadStore
from providers.mock_provider import MockProvider


class RecordingDisplay:
    """Display double that records every call the coordinator makes."""

    def __init__(self):
        self.transcript = []
        self.streaming = None
        self.streamed = []
        self.stream_sessions = 0
        self.thread_lists = []
        self.status = {}
        self.titles = []
        self.errors = []
        self.messages = []
        self.help = []
        self.clipboard = []
        self.theme = None
        self.exited = False
        self.position = 0
        self.scroll_calls = []

    def append_message(self, role, content):
        self.transcript.append((role, content))

    def begin_streaming_message(self):
        self.streaming = ''
        self.stream_sessions += 1

    def update_streaming_message(self, text):
        self.streaming += text
        self.streamed.append(text)

    def end_streaming_message(self):
        if self.streaming is not None:
            self.transcript.append(('assistant', self.streaming))
        self.streaming = None

    def update_thread_list(self, conversations, selected_id=None):
        self.thread_lists.append(([c.id for c in conversations], selected_id))

    def update_status(self, **fields):
        self.status.update(fields)

    def update_title(self, title):
        self.titles.append(title)

    def show_error(self, message):
        self.errors.append(message)

    def show_help(self, text):
        self.help.append(text)

    def show_message(self, message):
        self.messages.append(message)

    def clear_chat(self):
        self.transcript = []

    def scroll(self, delta):
        self.scroll_calls.append(('line', delta))
        self.position = max(0, self.position + delta)

    def scroll_half_page(self, direction):
        self.scroll_calls.append(('half', direction))

    def scroll_to(self, position):
        self.scroll_calls.append(('to', position))
        self.position = position

    def scroll_home(self):
        self.scroll_calls.append(('home', None))
        self.position = 0

    def scroll_end(self):
        self.scroll_calls.append(('end', None))

    def scroll_position(self):
        return self.position

    def current_line(self):
        return self.transcript[self.position][1] if self.transcript else ''

    def selection_text(self, start, end):
        return '\n'.join(content for _, content in self.transcript[start:end + 1])

    def copy_to_clipboard(self, text):
        self.clipboard.append(text)

    def set_theme(self, name):
        self.theme = name

    def exit_app(self):
        self.exited = True


@pytest.fixture
def store(tmp_path):
    return ThreadStore.open(str(tmp_path / "threads.db"))


@pytest.fixture
def config(tmp_path):
    return SessionConfig(ConfigParser(), {
        'default_model': 'mock',
        'export_dir': str(tmp_path / 'written'),
    })


def make(store, config, provider=None, **kwargs):
    display = RecordingDisplay()
    provider = provider or MockProvider()
    coordinator = SessionCoordinator(store, provider, display, config, **kwargs)
    return coordinator, display, provider


def press(coordinator, *tokens):
    for token in tokens:
        coordinator.handle_key(KeyEvent.of(token))


def test_submit_persists_both_messages_and_streams(store, config):
    coordinator, display, provider = make(store, config, MockProvider(responses=[['Hel', 'lo ', 'there']]))

    assert asyncio.run(coordinator.submit('  hi  ')) is True

    conversation = coordinator.current
    history = store.get_history(conversation.id)
    assert [(m.role, m.content) for m in history] == [('user', 'hi'), ('assistant', 'Hello there')]
    assert history[1].model == 'mock'
    assert display.streamed == ['Hel', 'lo ', 'there']
    assert display.transcript == [('user', 'hi'), ('assistant', 'Hello there')]
    # The provider saw the full history ending with the new user message
    assert provider.requests[0]['messages'] == [{'role': 'user', 'content': 'hi'}]
    assert provider.requests[0]['options'].model == 'mock'
    assert coordinator.state is CoordinatorState.IDLE
    assert display.status['state'] == 'idle'
    assert display.status['thread'] == conversation.id


def test_submit_continues_existing_history(store, config):
    coordinator, _, provider = make(store, config, MockProvider(responses=['one', 'two']))

    async def scenario():
        await coordinator.submit('first')
        await coordinator.submit('second')

    asyncio.run(scenario())
    sent = provider.requests[1]['messages']
    assert [m['content'] for m in sent] == ['first', 'one', 'second']
    assert len(store.recent_conversations()) == 1


def test_submit_while_awaiting_is_dropped(store, config):
    coordinator, display, provider = make(store, config, MockProvider(responses=['slow reply']))

    async def scenario():
        task = asyncio.create_task(coordinator.submit('first'))
        await asyncio.sleep(0)
        assert coordinator.awaiting
        dropped = await coordinator.submit('second')
        finished = await task
        return dropped, finished

    dropped, finished = asyncio.run(scenario())
    assert dropped is False
    assert finished is True
    assert len(provider.requests) == 1
    contents = [m.content for m in store.get_history(coordinator.current.id)]
    assert contents == ['first', 'slow reply']
    assert "A response is still in progress; message not sent" in display.messages


def test_stream_error_persists_nothing_and_reports(store, config):
    provider = MockProvider(responses=['partial answer here'], error=StreamError('connection reset'), fail_after=1)
    coordinator, display, _ = make(store, config, provider)

    assert asyncio.run(coordinator.submit('hi')) is False
    history = store.get_history(coordinator.current.id)
    assert [m.role for m in history] == ['user']
    assert display.errors == ['connection reset']
    assert display.streaming is None
    assert coordinator.state is CoordinatorState.IDLE


def test_incomplete_export_aborts_response(store, config, tmp_path):
    provider = MockProvider(responses=[['ok <FileExport name="a.txt">never', ' closed']])
    coordinator, display, _ = make(store, config, provider, exporter=ExportWriter(str(tmp_path / 'exports')))

    assert asyncio.run(coordinator.submit('hi')) is False
    assert [m.role for m in store.get_history(coordinator.current.id)] == ['user']
    assert len(display.errors) == 1
    assert not (tmp_path / 'exports').exists()


def test_user_persist_failure_skips_provider(store, config, monkeypatch):
    coordinator, display, provider = make(store, config)

    def broken(*args, **kwargs):
        raise StorageError("disk full")

    monkeypatch.setattr(store, 'append_message', broken)
    assert asyncio.run(coordinator.submit('hi')) is False
    assert provider.requests == []
    assert display.errors == ['disk full']
    assert coordinator.state is CoordinatorState.IDLE


def test_exported_files_are_written_and_announced(store, config, tmp_path):
    reply = 'Here <FileExport name="notes one.txt">line 1\nline 2</FileExport> done'
    provider = MockProvider(responses=[reply])
    coordinator, display, _ = make(store, config, provider, exporter=ExportWriter(str(tmp_path / 'exports')))

    assert asyncio.run(coordinator.submit('make a file')) is True
    conversation_id = coordinator.current.id
    path = tmp_path / 'exports' / str(conversation_id) / 'notes_one.txt'
    assert path.read_text(encoding='utf-8') == 'line 1\nline 2'
    assert '[File saved: notes_one.txt]' in display.messages
    assert store.get_history(conversation_id)[-1].content == 'Here  done'


def test_token_count_prefers_provider_usage(store, config):
    provider = MockProvider(responses=['reply'], usage={'total_tokens': 17})
    coordinator, _, _ = make(store, config, provider, token_counter=lambda content, model: 99)
    asyncio.run(coordinator.submit('hi'))
    assert store.get_history(coordinator.current.id)[-1].token_count == 17


def test_token_count_falls_back_to_estimate(store, config):
    seen = []

    def counter(content, model):
        seen.append((content, model))
        return 42

    provider = MockProvider(responses=['estimated reply'], usage={})
    coordinator, _, _ = make(store, config, provider, token_counter=counter)
    asyncio.run(coordinator.submit('hi'))
    assert store.get_history(coordinator.current.id)[-1].token_count == 42
    assert seen == [('estimated reply', 'mock')]


def test_quit_cancels_in_flight_response(store, config):
    coordinator, display, _ = make(store, config, MockProvider(responses=[['a', 'b', 'c', 'd']]))

    async def scenario():
        task = asyncio.create_task(coordinator.submit('hi'))
        await asyncio.sleep(0)
        coordinator.quit()
        return await task

    assert asyncio.run(scenario()) is False
    assert display.exited is True
    assert [m.role for m in store.get_history(coordinator.current.id)] == ['user']
    assert coordinator.state is CoordinatorState.IDLE


def test_thread_switch_during_response_keeps_starting_conversation(store, config):
    other = store.create_conversation(title='other')
    coordinator, display, _ = make(store, config, MockProvider(responses=[['x', 'y', 'z']]))

    async def scenario():
        task = asyncio.create_task(coordinator.submit('question'))
        await asyncio.sleep(0)
        origin = coordinator.current.id
        await coordinator.load_thread(other.id)
        streamed_before_switch = list(display.streamed)
        await task
        return origin, streamed_before_switch

    origin, streamed_before_switch = asyncio.run(scenario())
    assert [m.content for m in store.get_history(origin)] == ['question', 'xyz']
    assert store.get_history(other.id) == []
    # Nothing from the old response was drawn into the newly loaded thread
    assert display.streamed == streamed_before_switch
    assert display.transcript == []
    assert coordinator.current.id == other.id


def test_start_loads_most_recent_conversation(store, config):
    older = store.create_conversation(title='older')
    store.append_message(older.id, 'user', 'old message')
    newer = store.create_conversation(title='newer')
    store.append_message(newer.id, 'user', 'new message')
    coordinator, display, _ = make(store, config)

    asyncio.run(coordinator.start())
    assert coordinator.current.id == newer.id
    assert display.transcript == [('user', 'new message')]
    assert display.titles[-1] == 'newer'
    assert display.thread_lists[-1] == ([newer.id, older.id], newer.id)


def test_start_with_empty_store(store, config):
    coordinator, display, _ = make(store, config)
    asyncio.run(coordinator.start())
    assert coordinator.current is None
    assert display.titles == ['memex-threads']


def test_navigation_moves_through_list_and_clamps(store, config):
    a = store.create_conversation(title='a')
    b = store.create_conversation(title='b')
    c = store.create_conversation(title='c')
    coordinator, _, _ = make(store, config)

    async def scenario():
        await coordinator.start()
        visited = [coordinator.current.id]
        for _ in range(3):
            await coordinator.navigate(1)
            visited.append(coordinator.current.id)
        await coordinator.navigate(-1)
        visited.append(coordinator.current.id)
        return visited

    assert asyncio.run(scenario()) == [c.id, b.id, a.id, a.id, b.id]


def test_navigation_without_conversations(store, config):
    coordinator, display, _ = make(store, config)
    assert asyncio.run(coordinator.navigate(1)) is None
    assert display.messages == ['No conversations yet']


def test_search_then_next_and_previous_results(store, config):
    first = store.create_conversation(title='alpha notes')
    second = store.create_conversation(title='beta')
    store.append_message(second.id, 'user', 'alpha inside')
    store.create_conversation(title='unrelated')
    coordinator, display, _ = make(store, config)

    async def scenario():
        results = await coordinator.run_search('alpha')
        hits = []
        await coordinator.next_search_result('alpha', 1)
        hits.append(coordinator.current.id)
        await coordinator.next_search_result('alpha', 1)
        hits.append(coordinator.current.id)
        await coordinator.next_search_result('alpha', 1)
        hits.append(coordinator.current.id)
        await coordinator.next_search_result('alpha', -1)
        hits.append(coordinator.current.id)
        return [r.id for r in results], hits

    ids, hits = asyncio.run(scenario())
    assert ids == [second.id, first.id]
    assert hits == [second.id, first.id, second.id, first.id]
    assert "2 conversation(s) match 'alpha'" in display.messages


def test_search_command_with_no_query_clears_results(store, config):
    store.create_conversation(title='alpha')
    coordinator, display, _ = make(store, config)

    async def scenario():
        await coordinator.start()
        await coordinator.run_command('search alpha')
        assert coordinator.search_query == 'alpha'
        await coordinator.run_command('search')

    asyncio.run(scenario())
    assert coordinator.search_query is None
    assert coordinator.search_results == []


def test_set_command_updates_options(store, config):
    coordinator, display, _ = make(store, config)

    async def scenario():
        await coordinator.run_command('set temperature 1.5')
        await coordinator.run_command('set max_tokens 256')
        await coordinator.run_command('set theme light')
        await coordinator.run_command('set temperature 5')
        await coordinator.run_command('set max_tokens zero')
        await coordinator.run_command('set theme neon')

    asyncio.run(scenario())
    options = coordinator.generation_options()
    assert options.temperature == 1.5
    assert options.max_tokens == 256
    assert config.theme == 'light'
    assert display.theme == 'light'
    assert display.messages[:3] == ['temperature set to 1.5', 'max_tokens set to 256', 'theme set to light']
    assert display.errors[0] == 'temperature must be between 0 and 2'
    assert 'not a number' in display.errors[1]
    assert display.errors[2].startswith("Unknown theme 'neon'")


def test_model_command(store, config):
    coordinator, display, _ = make(store, config)

    async def scenario():
        await coordinator.run_command('model')
        await coordinator.run_command('m gpt-4o')

    asyncio.run(scenario())
    assert display.messages[0] == 'Current model: mock. Available: mock'
    assert display.messages[1] == 'Model set to gpt-4o'
    assert config.model == 'gpt-4o'
    assert display.status['model'] == 'gpt-4o'


def test_thread_commands(store, config):
    coordinator, display, _ = make(store, config)

    async def scenario():
        await coordinator.run_command('thread new Ideas')
        ideas = coordinator.current
        await coordinator.run_command('branch')
        branch = coordinator.current
        await coordinator.run_command(f'thread delete {ideas.id}')
        await coordinator.run_command('thread list')
        await coordinator.run_command(f'thread {ideas.id}')
        await coordinator.run_command(f'thread delete {branch.id}')
        return ideas, branch

    ideas, branch = asyncio.run(scenario())
    assert ideas.title == 'Ideas'
    assert branch.parent_id == ideas.id
    assert branch.title == 'Ideas (branch)'
    assert "Branched thread" in display.messages[0]
    # Parent with a child cannot be deleted
    assert 'branch' in display.errors[0]
    assert f"Deleted thread {branch.id}" in display.messages
    assert coordinator.current.id == ideas.id
    assert store.children(ideas.id) == []


def test_deleting_current_thread_clears_view(store, config):
    coordinator, display, _ = make(store, config)

    async def scenario():
        await coordinator.run_command('thread new Scratch')
        await coordinator.run_command(f'thread delete {coordinator.current.id}')

    asyncio.run(scenario())
    assert coordinator.current is None
    assert display.transcript == []
    assert display.titles[-1] == 'memex-threads'


def test_write_command_exports_markdown(store, config, tmp_path):
    coordinator, display, _ = make(store, config, MockProvider(responses=['answer']))

    async def scenario():
        await coordinator.submit('question')
        await coordinator.run_command('write')
        await coordinator.run_command(f'w {tmp_path / "custom.md"}')

    asyncio.run(scenario())
    default_path = tmp_path / 'written' / f'conversation-{coordinator.current.id}.md'
    assert default_path.exists()
    assert (tmp_path / 'custom.md').read_text(encoding='utf-8').count('answer') == 1
    assert display.messages[-1].startswith('Conversation saved to ')


def test_write_without_conversation_reports(store, config):
    coordinator, display, _ = make(store, config)
    asyncio.run(coordinator.run_command('write'))
    assert display.errors == ['No conversation to write']


def test_help_and_unknown_commands(store, config):
    coordinator, display, _ = make(store, config)

    async def scenario():
        await coordinator.run_command('help')
        await coordinator.run_command('help set')
        await coordinator.run_command('frobnicate')

    asyncio.run(scenario())
    assert display.help[0].startswith('Commands:')
    assert display.help[1].startswith(':set <option> <value>')
    assert display.errors[0].startswith('Unknown command: frobnicate')


def test_keys_drive_submit_and_commands(store, config):
    coordinator, display, provider = make(store, config, MockProvider(responses=['pong']))

    async def scenario():
        press(coordinator, 'i', 'p', 'i', 'n', 'g', 'enter')
        await coordinator.drain()
        press(coordinator, 'escape', ':', 'q', 'enter')
        await coordinator.drain()

    asyncio.run(scenario())
    assert [m.content for m in store.get_history(coordinator.current.id)] == ['ping', 'pong']
    assert display.exited is True
    assert coordinator.machine.mode is Mode.NORMAL
    assert display.status['mode'] == '█ NORMAL'


def test_visual_delete_yanks_instead(store, config):
    coordinator, display, _ = make(store, config)
    display.transcript = [('user', 'one'), ('assistant', 'two')]

    press(coordinator, 'v', 'd')
    assert display.clipboard == ['one']
    assert display.messages == ['Messages are append-only; selection yanked instead']


def test_marks_and_yank_go_through_display(store, config):
    coordinator, display, _ = make(store, config)
    display.transcript = [('user', 'one'), ('assistant', 'two'), ('user', 'three')]
    display.position = 2

    press(coordinator, 'm', 'a', 'g', 'g', "'", 'a', 'y', 'y', 'p')
    assert display.messages == ["Mark 'a' set"]
    assert ('to', 2) in display.scroll_calls
    assert display.clipboard == ['three']
    assert coordinator.machine.mode is Mode.INSERT
    assert coordinator.machine.insert_buffer == 'three'
    assert display.status['mode'] == '▲ INSERT'


def test_tab_completion_offers_provider_models(store, config):
    provider = MockProvider(params={'models': ['gpt-4o', 'gpt-4o-mini', 'claude']})
    coordinator, _, _ = make(store, config, provider)
    assert coordinator.complete_command(':model cl') == [':model claude']
    press(coordinator, ':', 'm', 'o', 'd', 'e', 'l', ' ', 'g', 'tab')
    assert coordinator.machine.command_buffer == ':model gpt-4o'


class BlockingProvider(MockProvider):
    """Streams one fragment, then blocks inside the generator until released."""

    def __init__(self):
        super().__init__()
        self.waiting = threading.Event()
        self.release = threading.Event()

    def stream_chat(self, messages, options):
        self.requests.append({'messages': list(messages), 'options': options})
        yield 'hello '
        self.waiting.set()
        self.release.wait(5)
        yield 'world'


def test_task_cancelled_mid_fragment_propagates_cancellation(store, config):
    provider = BlockingProvider()
    coordinator, display, _ = make(store, config, provider)

    async def scenario():
        task = asyncio.create_task(coordinator.submit('hi'))
        while not provider.waiting.is_set():
            await asyncio.sleep(0.01)
        task.cancel()
        try:
            await task
            outcome = 'finished'
        except asyncio.CancelledError:
            outcome = 'cancelled'
        provider.release.set()
        return outcome

    assert asyncio.run(scenario()) == 'cancelled'
    assert display.errors == []
    assert display.streamed == ['hello ']
    assert [m.role for m in store.get_history(coordinator.current.id)] == ['user']
    assert coordinator.state is CoordinatorState.IDLE


class SingleReplyProvider(MockProvider):
    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.chat_calls = 0
        self.stream_calls = 0

    def chat(self, messages, options):
        self.chat_calls += 1
        return super().chat(messages, options)

    def stream_chat(self, messages, options):
        self.stream_calls += 1
        return super().stream_chat(messages, options)


def test_stream_disabled_uses_single_completion(store, config, tmp_path):
    config.set_option('DEFAULT', 'stream', False)
    reply = 'one whole reply <FileExport name="a.txt">body</FileExport> done'
    provider = SingleReplyProvider(responses=[reply])
    coordinator, display, _ = make(store, config, provider, exporter=ExportWriter(str(tmp_path / 'exports')))

    assert asyncio.run(coordinator.submit('hi')) is True
    assert (provider.chat_calls, provider.stream_calls) == (1, 0)
    assert provider.requests[0]['options'].stream is False
    assert ''.join(display.streamed) == 'one whole reply  done'
    assert [m.content for m in store.get_history(coordinator.current.id)] == ['hi', 'one whole reply  done']
    assert (tmp_path / 'exports' / str(coordinator.current.id) / 'a.txt').read_text(encoding='utf-8') == 'body'


def test_stream_disabled_reports_provider_errors(store, config):
    config.set_option('DEFAULT', 'stream', False)

    class FailingChat(MockProvider):
        def chat(self, messages, options):
            raise StreamError("Upstream returned status 500")

    coordinator, display, _ = make(store, config, FailingChat())
    assert asyncio.run(coordinator.submit('hi')) is False
    assert display.errors == ['Upstream returned status 500']
    assert [m.role for m in store.get_history(coordinator.current.id)] == ['user']


def test_branches_appear_under_their_root_in_thread_list(store, config):
    other = store.create_conversation(title='other')
    coordinator, display, _ = make(store, config, MockProvider(responses=['first', 'second']))

    async def scenario():
        await coordinator.submit('root question')
        root = coordinator.current
        await coordinator.run_command('branch side')
        child = coordinator.current
        await coordinator.submit('side question')
        await coordinator.run_command('branch deeper')
        grandchild = coordinator.current
        await coordinator.load_thread(child.id)
        return root, child, grandchild

    root, child, grandchild = asyncio.run(scenario())
    ids, selected = display.thread_lists[-1]
    assert selected == child.id
    assert ids.index(root.id) + 1 == ids.index(child.id)
    assert ids.index(child.id) + 1 == ids.index(grandchild.id)
    assert other.id in ids
    assert [c.depth for c in coordinator.thread_list if c.id in (root.id, child.id, grandchild.id)] == [0, 1, 2]


def test_navigation_walks_into_branches(store, config):
    root = store.create_conversation(title='root')
    child = store.create_conversation(title='child', parent_id=root.id)
    coordinator, display, _ = make(store, config)

    async def scenario():
        await coordinator.load_thread(child.id)
        visited = []
        await coordinator.navigate(-1)
        visited.append(coordinator.current.id)
        await coordinator.navigate(1)
        visited.append(coordinator.current.id)
        await coordinator.run_command('thread list')
        return visited

    assert asyncio.run(scenario()) == [root.id, child.id]
    assert display.messages[-1].splitlines() == [
        f"{root.id:>5}  root  (0 messages)",
        f"{child.id:>5}    child  (0 messages)",
    ]
