from __future__ import annotations

from typing import Any, Dict, List, Tuple


COMPANION_ROWS: List[Dict[str, Any]] = [
    {
        "id": "comp-physics",
        "name": "Neura the Brainy Explorer",
        "subject": "science",
        "topic": "Neural Network of the Brain",
        "voice": "female",
        "style": "formal",
        "duration": 15,
        "author": "user-a",
    },
    {
        "id": "comp-maths",
        "name": "Countsy the Number Wizard",
        "subject": "maths",
        "topic": "Derivatives & Integrals",
        "voice": "male",
        "style": "casual",
        "duration": 30,
        "author": "user-a",
    },
    {
        "id": "comp-history",
        "name": "Memo the Memory Keeper",
        "subject": "history",
        "topic": "World Wars: Causes & Consequences",
        "voice": "female",
        "style": "casual",
        "duration": 20,
        "author": "user-b",
    },
]

LIVELY_SCRIPT: List[Tuple[str, str]] = [
    ("assistant", "Hello! Ready to talk about neurons?"),
    ("user", "Yes, how do neurons actually fire?"),
    ("assistant", "They fire when the membrane potential crosses a threshold."),
    ("user", "Why does the threshold matter so much?"),
    ("assistant", "It makes firing all-or-nothing."),
    ("user", "That is really interesting, what happens after?"),
]


def user_headers(user_id: str = "user-a") -> Dict[str, str]:
    return {"X-User-Id": user_id}
