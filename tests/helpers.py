"""Test doubles shared across the Vigil test suite."""

import math

from vigil.errors import OperationCancelled
from vigil.resilience import STORAGE_POLICY, ResilientCaller


async def _no_sleep(delay, cancel):
    if cancel is not None and cancel.is_set():
        raise OperationCancelled("back-off")


def fast_caller(policy=STORAGE_POLICY):
    """ResilientCaller that never actually sleeps between attempts."""
    return ResilientCaller(policy, sleep=_no_sleep, rng=lambda: 0.5)


def unit(cos):
    """2-d unit vector whose cosine with [1, 0] is *cos*."""
    return [cos, math.sqrt(max(0.0, 1.0 - cos * cos))]


class MappingEmbedder:
    """Embedder returning fixed vectors for known texts."""

    dimensions = 2

    def __init__(self, vectors=None, default=None):
        self.vectors = dict(vectors or {})
        self.default = default or [0.0, 1.0]
        self.calls = []

    async def embed(self, text):
        self.calls.append(text)
        return list(self.vectors.get(text, self.default))


class ScriptedReasoner:
    """Reasoner that returns queued replies and remembers every prompt."""

    def __init__(self, *replies, default='{"observation": "all quiet", "decision": "keep watching"}'):
        self.replies = list(replies)
        self.default = default
        self.prompts = []

    async def infer(self, prompt, conversation=None):
        self.prompts.append(prompt)
        if self.replies:
            reply = self.replies.pop(0)
            if isinstance(reply, BaseException):
                raise reply
            return reply
        return self.default
