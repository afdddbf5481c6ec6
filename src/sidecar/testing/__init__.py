"""Test doubles for running the agent without a model endpoint or embedding model."""

from .fixtures import HashEmbedder, make_settings, make_test_engine
from .mock_llm import FakeToolCallingChatModel, ScriptedModelClient, create_mock_llm

__all__ = [
    "FakeToolCallingChatModel",
    "HashEmbedder",
    "ScriptedModelClient",
    "create_mock_llm",
    "make_settings",
    "make_test_engine",
]
