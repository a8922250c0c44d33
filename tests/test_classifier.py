"""
Tests for Request Classification
"""

import pytest

from node_ledger.billing import RequestClassifier


class TestRequestClassifier:
    """Test route to (family, kind) mapping."""

    @pytest.mark.parametrize("path,family,kind", [
        ("/api/chat", "ollama", "chat"),
        ("/ollama/api/chat", "ollama", "chat"),
        ("/api/generate", "ollama", "generate"),
        ("/ollama/api/generate", "ollama", "generate"),
        ("/api/embeddings", "ollama", "embeddings"),
        ("/ollama/api/embeddings", "ollama", "embeddings"),
    ])
    def test_ollama_routes(self, path, family, kind):
        classification = RequestClassifier().classify(path)

        assert classification is not None
        assert (classification.family, classification.kind) == (family, kind)

    def test_openai_routes_follow_framework(self):
        """OpenAI-style routes are priced by the framework the node runs."""
        ollama = RequestClassifier("ollama").classify("/openai/chat/completions")
        vllm = RequestClassifier("vllm").classify("/openai/chat/completions")

        assert (ollama.family, ollama.kind) == ("ollama", "chat/completions")
        assert (vllm.family, vllm.kind) == ("vllm", "chat/completions")
        assert RequestClassifier("vllm").classify("/openai/embeddings").kind == "embeddings"

    def test_query_string_ignored(self):
        classification = RequestClassifier().classify("/api/chat?stream=false")
        assert classification.route == "/api/chat"

    @pytest.mark.parametrize("path", [
        "/",
        "/health",
        "/api/tags",
        "/api/chat/extra",
        "/openai/models",
        "/API/CHAT",
    ])
    def test_unmetered_routes(self, path):
        classifier = RequestClassifier()
        assert classifier.classify(path) is None
        assert not classifier.is_meterable(path)

    def test_unknown_framework_rejected(self):
        with pytest.raises(ValueError):
            RequestClassifier("tgi")

    def test_supported_routes(self):
        routes = RequestClassifier.supported_routes()
        assert len(routes) == 9
        assert "/openai/completions" in routes
