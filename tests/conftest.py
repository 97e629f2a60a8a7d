"""
Pytest configuration for gemini_relay tests.

Upstream services are simulated with httpx.MockTransport (see helpers.py);
the apps receive a client factory bound to that transport, so no test
touches the network.

Usage:
    pytest tests/ -v
"""

import pytest


@pytest.fixture
def api_keys():
    return ["AIzaSy-key-one-0001", "AIzaSy-key-two-0002", "AIzaSy-key-three-0003"]


@pytest.fixture
def upstreams():
    return ["https://edge-a.example.com/v1", "https://edge-b.example.com/v1/"]
