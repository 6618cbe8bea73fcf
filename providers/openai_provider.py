import os
from time import time
from typing import Any, Dict, Iterator, List, Optional

import openai
from openai import OpenAI

from base_classes import APIProvider, GenerationOptions, StreamError


class OpenAIProvider(APIProvider):
    """
    OpenAI-compatible chat completions handler (OpenAI, OpenRouter, local servers)
    """

    def __init__(self, params: Dict[str, Any], logger=None, client: Optional[Any] = None):
        self.params = dict(params or {})
        self.logger = logger
        self.last_api_param = None

        # Initialize client with the section parameters unless one is injected
        self.client = client if client is not None else self._initialize_client()

        # usage reported by the backend for the last request
        self.turn_usage = None

    def _initialize_client(self) -> OpenAI:
        """Initialize OpenAI client with current connection parameters"""
        params = self.params

        # set the options for the OpenAI API client
        options = {}
        if params.get('api_key'):
            options['api_key'] = params['api_key']
        elif 'OPENAI_API_KEY' in os.environ:
            options['api_key'] = os.environ['OPENAI_API_KEY']
        else:
            options['api_key'] = 'none'  # local servers still need something set

        if params.get('base_url'):
            options['base_url'] = params['base_url']

        if params.get('timeout') is not None:
            options['timeout'] = params['timeout']

        # OpenRouter uses these to attribute traffic; other backends ignore them
        if params.get('referer'):
            options['default_headers'] = {
                'HTTP-Referer': str(params['referer']),
                'X-Title': 'memex-threads',
            }

        return OpenAI(**options)

    def _request(self, messages: List[Dict[str, str]], options: GenerationOptions, stream: bool):
        api_parms: Dict[str, Any] = {
            'model': options.model,
            'messages': messages,
            'temperature': options.temperature,
        }
        if options.max_tokens:
            api_parms['max_tokens'] = options.max_tokens
        if stream:
            api_parms['stream'] = True
            # Only include stream_options when the backend supports it
            if self.params.get('stream_options', True):
                api_parms['stream_options'] = {
                    'include_usage': True,
                }

        self.last_api_param = api_parms
        if self.logger:
            self.logger.provider_start({
                'model': options.model,
                'stream': stream,
                'messages': len(messages),
                'base_url': self.params.get('base_url'),
            })
        try:
            return self.client.chat.completions.create(**api_parms)
        except Exception as e:
            raise self._translate_error(e) from e

    def chat(self, messages: List[Dict[str, str]], options: GenerationOptions) -> str:
        """
        Creates a chat completion request and returns the full response text
        """
        start_time = time()
        self.turn_usage = None
        response = self._request(messages, options, stream=False)
        self._update_usage_stats(response.usage)
        content = response.choices[0].message.content or ''
        if self.logger:
            self.logger.provider_done({
                'model': options.model,
                'chars': len(content),
                'seconds': round(time() - start_time, 3),
            })
        return content

    def stream_chat(self, messages: List[Dict[str, str]], options: GenerationOptions) -> Iterator[str]:
        """
        Yields text fragments in arrival order; usage arrives on the last chunk
        """
        start_time = time()
        self.turn_usage = None
        chars = 0
        response = self._request(messages, options, stream=True)
        try:
            for chunk in response:
                if getattr(chunk, 'choices', None):
                    delta = chunk.choices[0].delta
                    content = getattr(delta, 'content', None)
                    if content:
                        chars += len(content)
                        yield content

                # Handle final usage stats in last chunk
                if getattr(chunk, 'usage', None):
                    self._update_usage_stats(chunk.usage)

        except StreamError:
            raise
        except Exception as e:
            raise self._translate_error(e, interrupted=True) from e

        finally:
            if self.logger:
                self.logger.provider_done({
                    'model': options.model,
                    'chars': chars,
                    'stream': True,
                    'seconds': round(time() - start_time, 3),
                })

    def _translate_error(self, e: Exception, interrupted: bool = False) -> StreamError:
        prefix = "Stream interrupted: " if interrupted else ""
        if isinstance(e, openai.APIConnectionError):
            message = "The server could not be reached"
            if e.__cause__:
                message += f" ({e.__cause__})"
        elif isinstance(e, openai.RateLimitError):
            message = "Rate limit exceeded - please wait before retrying"
        elif isinstance(e, openai.APIStatusError):
            message = f"Upstream returned status {getattr(e, 'status_code', 'unknown')}"
            resp_obj = getattr(e, 'response', None)
            body = getattr(resp_obj, 'text', None) if resp_obj is not None else None
            if body:
                message += f": {body}"
        else:
            message = f"Unexpected error: {e}"

        debug = {'base_url': self.params.get('base_url'), 'error': type(e).__name__}
        if self.last_api_param is not None:
            # Don't log the full messages as they can be very long
            debug.update({k: (f"<{len(v)} messages>" if k == 'messages' else v)
                          for k, v in self.last_api_param.items()})
        if self.logger:
            self.logger.error('providers.openai', e)
        return StreamError(prefix + message, debug_info=debug)

    def _update_usage_stats(self, usage):
        if not usage:
            return
        self.turn_usage = usage

    def get_usage(self) -> Dict[str, int]:
        """Token counts for the last request; empty when the backend reported none"""
        if not self.turn_usage:
            return {}
        prompt = getattr(self.turn_usage, 'prompt_tokens', 0) or 0
        completion = getattr(self.turn_usage, 'completion_tokens', 0) or 0
        total = getattr(self.turn_usage, 'total_tokens', None) or (prompt + completion)
        return {
            'prompt_tokens': prompt,
            'completion_tokens': completion,
            'total_tokens': total,
        }

    def reset_usage(self) -> None:
        self.turn_usage = None

    def list_models(self) -> List[str]:
        models = self.params.get('models') or []
        if isinstance(models, str):
            models = [models]
        return list(models)
