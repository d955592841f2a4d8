# mcbuilder/core/server_files.py
"""
Render the small configuration files a Minecraft server reads at start
(`eula.txt`, `server.properties`, `whitelist.json`, `ops.json`) from the
resource spec.  Output is deterministic so it can feed the fingerprint.
"""

from __future__ import annotations

import json
from typing import Dict, List

from mcbuilder.core.models import EULA, AccessMode, MinecraftServerSpec, Player

OPERATOR_LEVEL = 4


def server_properties(spec: MinecraftServerSpec) -> Dict[str, str]:
    props: Dict[str, str] = {"gamemode": spec.game.game_mode.value.lower()}
    if spec.motd:
        props["motd"] = spec.motd
    if spec.players.maximum_online_players:
        props["max-players"] = str(spec.players.maximum_online_players)
    if spec.players.access_mode == AccessMode.allow_list_only:
        props["white-list"] = "true"
        props["enforce-whitelist"] = "true"
    if spec.world.seed:
        props["level-seed"] = spec.world.seed
    return props


def write_properties(props: Dict[str, str]) -> str:
    """Format a .properties file, one `key=value` per line, keys sorted."""
    lines = []
    for key in sorted(props):
        value = props[key].replace("\\", "\\\\").replace("\n", "\\n")
        lines.append(f"{key}={value}\n")
    return "".join(lines)


def _players(players: List[Player]) -> List[Dict[str, object]]:
    return [p.model_dump(exclude_none=True) for p in players]


def render(spec: MinecraftServerSpec) -> Dict[str, str]:
    """Return {filename: contents} for every config file the spec implies."""
    accepted = spec.eula == EULA.accepted
    files = {
        "eula.txt": f"eula={'true' if accepted else 'false'}\n",
        "server.properties": write_properties(server_properties(spec)),
    }
    if spec.players.allow_list:
        files["whitelist.json"] = json.dumps(_players(spec.players.allow_list), indent=2)
    if spec.players.operator_list:
        ops = [
            {**p, "level": OPERATOR_LEVEL, "bypassesPlayerLimit": False}
            for p in _players(spec.players.operator_list)
        ]
        files["ops.json"] = json.dumps(ops, indent=2)
    return files
