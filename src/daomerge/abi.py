from __future__ import annotations

from typing import Final


MERGE_EVENT_NAME: Final[str] = "MergePullRequest"


def _string_input(name: str) -> dict[str, object]:
    return {"indexed": False, "internalType": "string", "name": name, "type": "string"}


# Only the fragment the agent reads; the facet's functions are not called off chain.
MERGE_PULL_REQUEST_ABI: Final[list[dict[str, object]]] = [
    {
        "anonymous": False,
        "inputs": [
            _string_input("owner"),
            _string_input("repo"),
            _string_input("pull_number"),
            _string_input("sha"),
        ],
        "name": MERGE_EVENT_NAME,
        "type": "event",
    },
]
