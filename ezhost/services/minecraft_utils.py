# ezhost/services/minecraft_utils.py
"""
Minecraft text helpers shared by the RCON channel and routes.

Contains:
- Player name validation
- Colour code stripping
- Player list parsing from RCON /list responses
"""

import re
from dataclasses import dataclass, field
from typing import List, Optional

from ezhost.core.errors import InvalidRequest

# Minecraft username validation: 3-16 chars, alphanumeric + underscore only
PLAYER_NAME_PATTERN = re.compile(r'^[a-zA-Z0-9_]{3,16}$')

# "There are 2/20 players online: a, b" and the vanilla
# "There are 2 of a max of 20 players online: a, b"
LIST_RESPONSE_PATTERN = re.compile(
    r'There are (\d+)\s*(?:/|of a max of)\s*(\d+) players online:(.*)',
    re.DOTALL,
)


@dataclass
class PlayerList:
    online: Optional[int] = None
    max_players: Optional[int] = None
    names: List[str] = field(default_factory=list)


def strip_minecraft_colors(text: str) -> str:
    """Strip Minecraft color/formatting codes (§X) from text"""
    return re.sub(r'§.', '', text)


def validate_player_name(name: str) -> str:
    name = (name or "").strip()
    if not PLAYER_NAME_PATTERN.match(name):
        raise InvalidRequest(f"Invalid player name: {name!r}")
    return name


def parse_list_response(rcon_response: str) -> PlayerList:
    """
    Parse an RCON /list response.

    A response that does not match the expected format yields an empty
    PlayerList rather than an error.
    """
    match = LIST_RESPONSE_PATTERN.search(strip_minecraft_colors(rcon_response or ""))
    if not match:
        return PlayerList()
    names = [p.strip() for p in match.group(3).split(",") if p.strip()]
    return PlayerList(online=int(match.group(1)), max_players=int(match.group(2)), names=names)
