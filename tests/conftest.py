"""Shared fixtures for the unirouter test suite."""

import copy

import pytest

from unirouter.config import reset_settings

SAMPLE_PROVIDERS = [
    {
        "name": "openrouter",
        "models": ["claude-3.5-sonnet", "claude-3.7-sonnet"],
    },
    {
        "name": "haiku-glm",
        "models": ["glm-4.7", "glm-4.0"],
        "defaultModel": "glm-4.7",
    },
    {
        "name": "deepseek",
        "models": ["deepseek-chat", "deepseek-reasoner"],
    },
]

SAMPLE_ROUTER = {
    "engine": "unified",
    "defaultRoute": "openrouter,claude-3.5-sonnet",
    "rules": [
        {
            "name": "longContext",
            "priority": 100,
            "condition": {"type": "tokenThreshold", "value": 60000, "operator": "gt"},
            "action": {"route": "openrouter,claude-3.7-sonnet"},
        },
        {
            "name": "subagent",
            "priority": 90,
            "condition": {
                "type": "fieldExists",
                "field": "system.1.text",
                "operator": "contains",
                "value": "<CCR-SUBAGENT-MODEL>",
            },
            "action": {"route": "${subagent}"},
        },
        {
            "name": "background",
            "priority": 80,
            "condition": {"type": "modelContains", "value": "haiku", "operator": "contains"},
            "action": {"route": "haiku-glm"},
        },
        {
            "name": "webSearch",
            "priority": 70,
            "condition": {"type": "toolExists", "value": "web_search", "operator": "exists"},
            "action": {"route": "deepseek,deepseek-chat", "transformers": ["websearch"]},
        },
        {
            "name": "thinking",
            "priority": 60,
            "condition": {"type": "fieldExists", "field": "thinking", "operator": "exists"},
            "action": {"route": "deepseek,deepseek-reasoner"},
        },
        {
            "name": "directMapping",
            "priority": 50,
            "condition": {"type": "custom", "customFunction": "directModelMapping"},
            "action": {"route": "${mappedModel}"},
        },
        {
            "name": "userSpecified",
            "priority": 40,
            "condition": {"type": "custom", "customFunction": "modelContainsComma"},
            "action": {"route": "${userModel}"},
        },
    ],
    "cache": {"enabled": True, "maxSize": 100, "ttl": 60000},
    "debug": {"enabled": False},
}


@pytest.fixture(autouse=True)
def _clean_settings():
    """Reset the settings singleton before and after each test."""
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def sample_document():
    """A complete router configuration document (fresh copy per test)."""
    return {
        "Providers": copy.deepcopy(SAMPLE_PROVIDERS),
        "Router": copy.deepcopy(SAMPLE_ROUTER),
    }


@pytest.fixture
def subagent_system():
    """System entries carrying a subagent marker in the second entry."""
    return [
        {"type": "text", "text": "You are a helpful assistant."},
        {"type": "text", "text": "<CCR-SUBAGENT-MODEL>deepseek,deepseek-reasoner</CCR-SUBAGENT-MODEL> Plan the work."},
    ]
