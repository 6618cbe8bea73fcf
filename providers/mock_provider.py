"""
Mock provider for running memex-threads without an API key.
Replies are either scripted (tests) or a simple echo of the last user message.
"""

from typing import Any, Dict, Iterator, List, Optional, Sequence, Union

from base_classes import APIProvider, GenerationOptions

Script = Union[str, Sequence[str]]


class MockProvider(APIProvider):
    """
    A mock provider that gives simple responses for testing.

    ``responses`` is consumed one entry per request; an entry is either a
    string (split into ``fragment_size`` pieces when streamed) or a list of
    fragments yielded as given. ``error`` is raised after ``fail_after``
    fragments of the next streamed response.
    """

    def __init__(self, params: Optional[Dict[str, Any]] = None, logger=None,
                 responses: Optional[List[Script]] = None,
                 error: Optional[Exception] = None, fail_after: int = 0,
                 usage: Optional[Dict[str, int]] = None):
        self.params = dict(params or {})
        self.logger = logger
        self.responses: List[Script] = list(responses or [])
        self.error = error
        self.fail_after = fail_after
        self.scripted_usage = usage
        self.fragment_size = int(self.params.get('fragment_size', 12) or 12)
        self.requests: List[Dict[str, Any]] = []
        self.response_count = 0
        self._usage: Dict[str, int] = {}

    def _next_reply(self, messages: List[Dict[str, str]]) -> Script:
        self.response_count += 1
        if self.responses:
            return self.responses.pop(0)
        last = messages[-1]['content'] if messages else ''
        return f"I received your message: '{last[:50]}'. This is mock response #{self.response_count}."

    def _fragments(self, reply: Script) -> List[str]:
        if isinstance(reply, str):
            size = max(1, self.fragment_size)
            return [reply[i:i + size] for i in range(0, len(reply), size)]
        return list(reply)

    def chat(self, messages: List[Dict[str, str]], options: GenerationOptions) -> str:
        self.requests.append({'messages': list(messages), 'options': options})
        reply = self._next_reply(messages)
        text = reply if isinstance(reply, str) else ''.join(reply)
        self._set_usage(messages, text)
        return text

    def stream_chat(self, messages: List[Dict[str, str]], options: GenerationOptions) -> Iterator[str]:
        """Generate a streaming mock response."""
        self.requests.append({'messages': list(messages), 'options': options})
        self._usage = {}
        fragments = self._fragments(self._next_reply(messages))
        error, self.error = self.error, None
        for i, fragment in enumerate(fragments):
            if error is not None and i >= self.fail_after:
                raise error
            yield fragment
        if error is not None:
            raise error
        self._set_usage(messages, ''.join(fragments))

    def _set_usage(self, messages: List[Dict[str, str]], text: str) -> None:
        if self.scripted_usage is not None:
            self._usage = dict(self.scripted_usage)
            return
        prompt = sum(len(m.get('content', '').split()) for m in messages)
        completion = len(text.split())
        self._usage = {
            'prompt_tokens': prompt,
            'completion_tokens': completion,
            'total_tokens': prompt + completion,
        }

    def get_usage(self) -> Dict[str, int]:
        return dict(self._usage)

    def reset_usage(self) -> None:
        self._usage = {}
        self.response_count = 0

    def list_models(self) -> List[str]:
        models = self.params.get('models') or ['mock']
        if isinstance(models, str):
            models = [models]
        return list(models)
