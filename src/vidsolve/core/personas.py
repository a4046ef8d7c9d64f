"""Client persona registry.

Order matters: personas are tried first to last. Adding a persona only needs
a new table entry and a position in the order.
"""

from typing import Dict, Iterable, List, Optional, Sequence

from .models import ClientPersona

ANDROID_VR = ClientPersona(
    id="android_vr",
    display_name="Android VR (Oculus Quest 3)",
    client={
        "clientName": "ANDROID_VR",
        "clientVersion": "1.71.26",
        "deviceMake": "Oculus",
        "deviceModel": "Quest 3",
        "androidSdkVersion": 32,
        "osName": "Android",
        "osVersion": "12L",
    },
    client_id=28,
    requires_cipher_solving=False,
    user_agent=(
        "com.google.android.apps.youtube.vr.oculus/1.71.26 "
        "(Linux; U; Android 12L; eureka-user Build/SQ3A.220605.009.A1) gzip"
    ),
)

WEB = ClientPersona(
    id="web",
    display_name="Web (desktop)",
    client={
        "clientName": "WEB",
        "clientVersion": "2.20260114.08.00",
        "osName": "Windows",
        "osVersion": "10.0",
        "platform": "DESKTOP",
    },
    client_id=1,
    requires_cipher_solving=True,
)

# Works around age-gate / "made for kids" restrictions for embeddable videos
WEB_EMBEDDED = ClientPersona(
    id="web_embedded",
    display_name="Web embedded player",
    client={
        "clientName": "WEB_EMBEDDED_PLAYER",
        "clientVersion": "1.20260115.01.00",
    },
    client_id=56,
    requires_cipher_solving=True,
    embed_url="https://www.youtube.com/",
    restriction_fallback=True,
)

PERSONAS: Dict[str, ClientPersona] = {p.id: p for p in (ANDROID_VR, WEB, WEB_EMBEDDED)}

DEFAULT_ORDER = ["android_vr", "web", "web_embedded"]


def validate_personas(personas: Sequence[ClientPersona]) -> List[ClientPersona]:
    """Check the fallback list and return it as a list."""
    personas = list(personas)
    if not personas:
        raise ValueError("At least one client persona is required")
    ids = [p.id for p in personas]
    if len(set(ids)) != len(ids):
        raise ValueError(f"Duplicate persona ids in {ids}")
    if all(p.requires_cipher_solving for p in personas):
        raise ValueError("At least one persona must not require cipher solving")
    return personas


def select_personas(order: Optional[Iterable[str]] = None,
                    registry: Optional[Dict[str, ClientPersona]] = None) -> List[ClientPersona]:
    """Build a validated persona list from ids, e.g. from the settings file."""
    registry = registry or PERSONAS
    selected = []
    for persona_id in order or DEFAULT_ORDER:
        if persona_id not in registry:
            raise ValueError(f"Unknown client persona: {persona_id}")
        selected.append(registry[persona_id])
    return validate_personas(selected)
