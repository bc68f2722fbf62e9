"""Generated launcher scripts kept under <server dir>/EZHost."""

import logging
import os
import shutil
import stat
import sys
from enum import Enum
from pathlib import Path
from typing import List

from ezhost.core.config import SCRIPT_DIR_NAME, VARIABLES_FILE_NAME
from ezhost.services.registry import ServerRecord, ServerType

logger = logging.getLogger(__name__)


class ScriptKind(str, Enum):
    INIT = "initServer"
    START = "start"


IS_WINDOWS = sys.platform.startswith("win")

# Forge (1.17+) ships run.sh/run.bat reading user_jvm_args.txt; we pass the
# flags from variables.txt on the command line instead.
_FORGE_LAUNCH_SH = (
    'ARGS_FILE=$(ls libraries/net/minecraftforge/forge/*/unix_args.txt | head -n 1)\n'
    'exec java $JVM_ARGS "@$ARGS_FILE" nogui'
)
_FABRIC_LAUNCH_SH = 'exec java $JVM_ARGS -jar fabric-server-launch.jar nogui'
_FORGE_LAUNCH_PS1 = (
    '$argsFile = Get-ChildItem -Path "libraries/net/minecraftforge/forge" -Recurse '
    '-Filter "win_args.txt" | Select-Object -First 1\n'
    '& java @jvmArgs "@$($argsFile.FullName)" nogui'
)
_FABRIC_LAUNCH_PS1 = '& java @jvmArgs -jar fabric-server-launch.jar nogui'

_START_SH = """#!/bin/sh
# Generated by EZHost. Starts the server with the JVM flags in {variables}.
cd "$(dirname "$0")/.." || exit 1
if [ ! -f {variables} ]; then
    echo "{variables} is missing" >&2
    exit 1
fi
JVM_ARGS=$(cat {variables})
{launch}
"""

_INIT_SH = """#!/bin/sh
# Generated by EZHost. Accepts the EULA and seeds {variables}.
cd "$(dirname "$0")/.." || exit 1
echo "eula=true" > eula.txt
if [ ! -f {variables} ]; then
    echo "-Xmx4G -Xms1G" > {variables}
fi
echo "Server initialized in $(pwd)"
"""

_START_PS1 = """# Generated by EZHost. Starts the server with the JVM flags in {variables}.
Set-Location (Join-Path $PSScriptRoot "..")
if (-not (Test-Path "{variables}")) {{
    Write-Error "{variables} is missing"
    exit 1
}}
$jvmArgs = (Get-Content "{variables}" -Raw).Trim() -split "\\s+"
{launch}
exit $LASTEXITCODE
"""

_INIT_PS1 = """# Generated by EZHost. Accepts the EULA and seeds {variables}.
Set-Location (Join-Path $PSScriptRoot "..")
Set-Content -Path "eula.txt" -Value "eula=true"
if (-not (Test-Path "{variables}")) {{
    Set-Content -Path "{variables}" -Value "-Xmx4G -Xms1G"
}}
Write-Output "Server initialized in $(Get-Location)"
"""


def script_dir(record: ServerRecord) -> Path:
    return record.path / SCRIPT_DIR_NAME


def script_path(record: ServerRecord, kind: ScriptKind, windows: bool = IS_WINDOWS) -> Path:
    suffix = ".ps1" if windows else ".sh"
    return script_dir(record) / f"{kind.value}{suffix}"


def script_command(path: Path, windows: bool = IS_WINDOWS) -> List[str]:
    """argv that runs a generated script on this platform."""
    if windows:
        return ["powershell.exe", "-ExecutionPolicy", "Bypass", "-File", str(path)]
    return ["sh", str(path)]


def render_script(kind: ScriptKind, server_type: ServerType, windows: bool = IS_WINDOWS) -> str:
    if windows:
        if kind is ScriptKind.INIT:
            return _INIT_PS1.format(variables=VARIABLES_FILE_NAME)
        launch = _FABRIC_LAUNCH_PS1 if server_type is ServerType.FABRIC else _FORGE_LAUNCH_PS1
        return _START_PS1.format(variables=VARIABLES_FILE_NAME, launch=launch)

    if kind is ScriptKind.INIT:
        return _INIT_SH.format(variables=VARIABLES_FILE_NAME)
    launch = _FABRIC_LAUNCH_SH if server_type is ServerType.FABRIC else _FORGE_LAUNCH_SH
    return _START_SH.format(variables=VARIABLES_FILE_NAME, launch=launch)


def write_scripts(record: ServerRecord, windows: bool = IS_WINDOWS) -> List[Path]:
    """(Re)generate the init and start scripts for *record*."""
    target_dir = script_dir(record)
    target_dir.mkdir(parents=True, exist_ok=True)
    written = []
    for kind in ScriptKind:
        path = script_path(record, kind, windows=windows)
        path.write_text(render_script(kind, record.type, windows=windows), encoding="utf-8")
        mode = os.stat(path).st_mode
        os.chmod(path, mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        written.append(path)
    logger.info(f"Wrote launcher scripts for {record.name} to {target_dir}")
    return written


def remove_scripts(record: ServerRecord) -> bool:
    """Delete the generated script directory; the server install is untouched."""
    target_dir = script_dir(record)
    if not target_dir.exists():
        return False
    shutil.rmtree(target_dir)
    logger.info(f"Removed launcher scripts for {record.name} from {target_dir}")
    return True
