"""
Request Classifier

Maps an inbound route to (backend family, operation kind). Only routes in
the table are metered. OpenAI-style routes are served by whichever
framework the node runs, so their family is resolved at construction.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

OPENAI_FAMILY = "openai"

ROUTE_TABLE: Dict[str, Tuple[str, str]] = {
    "/api/chat": ("ollama", "chat"),
    "/ollama/api/chat": ("ollama", "chat"),
    "/api/generate": ("ollama", "generate"),
    "/ollama/api/generate": ("ollama", "generate"),
    "/api/embeddings": ("ollama", "embeddings"),
    "/ollama/api/embeddings": ("ollama", "embeddings"),
    "/openai/chat/completions": (OPENAI_FAMILY, "chat/completions"),
    "/openai/completions": (OPENAI_FAMILY, "completions"),
    "/openai/embeddings": (OPENAI_FAMILY, "embeddings"),
}

SUPPORTED_FRAMEWORKS = ("ollama", "vllm")


@dataclass(frozen=True)
class Classification:
    """A meterable route resolved to its rate key."""
    route: str
    family: str
    kind: str


class RequestClassifier:
    """Decides whether a route is meterable and how it is priced."""

    def __init__(self, framework: str = "ollama"):
        if framework not in SUPPORTED_FRAMEWORKS:
            raise ValueError(f"Unsupported inference framework: {framework}")
        self.framework = framework

    def classify(self, path: str) -> Optional[Classification]:
        """Return the classification for a path, or None if not metered."""
        route = path.split("?", 1)[0]
        if len(route) > 1:
            route = route.rstrip("/")

        entry = ROUTE_TABLE.get(route)
        if entry is None:
            return None

        family, kind = entry
        if family == OPENAI_FAMILY:
            family = self.framework
        return Classification(route=route, family=family, kind=kind)

    def is_meterable(self, path: str) -> bool:
        return self.classify(path) is not None

    @staticmethod
    def supported_routes() -> List[str]:
        return sorted(ROUTE_TABLE)
