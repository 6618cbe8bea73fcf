import json
from typing import Any, Optional

import tiktoken

FALLBACK_ENCODING = "cl100k_base"


def _encoding_for(model: Optional[str]):
    # OpenRouter ids carry a vendor prefix ("openai/gpt-4")
    name = (model or "gpt-4").split("/")[-1]
    try:
        return tiktoken.encoding_for_model(name)
    except KeyError:
        return tiktoken.get_encoding(FALLBACK_ENCODING)


def count_tiktoken(messages: Any, model: Optional[str] = "gpt-4") -> int:
    """Returns the number of tokens used by a string, a message dict or a message list"""
    if messages is None:
        return 0
    encoding = _encoding_for(model)

    tokens_per_message = 3
    tokens_per_name = 1

    if isinstance(messages, str):
        return len(encoding.encode(messages, disallowed_special=()))

    if isinstance(messages, dict):
        try:
            messages_str = json.dumps(messages)
        except TypeError:
            messages_str = str(messages)
        return len(encoding.encode(messages_str, disallowed_special=()))

    if isinstance(messages, list):
        num_tokens = 0
        for message in messages:
            num_tokens += tokens_per_message
            for key, value in message.items():
                num_tokens += len(encoding.encode(str(value), disallowed_special=()))
                if key == "role":
                    num_tokens += tokens_per_name
        num_tokens += 3  # every reply is primed with <|start|>assistant<|message|>
        return num_tokens

    return len(encoding.encode(str(messages), disallowed_special=()))
