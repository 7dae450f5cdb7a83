"""Query host facts through the ``facter`` command."""

from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import Any

from misaka.errors import MisakaError

logger = logging.getLogger(__name__)

FACT_NAME = re.compile(r"^[0-9a-z][0-9a-z_-]*$", re.IGNORECASE)


class FacterError(MisakaError):
    """facter failed or printed something that is not JSON."""


async def query(facts: str | list[str]) -> dict[str, Any]:
    """Look up facts, e.g. ``await query(["ipaddress", "fqdn"])``.

    Names that are not plain fact identifiers are never passed to facter and
    come back as None, like facts facter does not know.
    """
    if isinstance(facts, str):
        facts = [facts]

    argv = ["/usr/bin/env", "facter", "--json"]
    argv.extend(fact for fact in facts if FACT_NAME.match(fact))

    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise FacterError(f"cannot run facter: {e}") from e

    stdout, stderr = await proc.communicate()
    if proc.returncode:
        logger.debug("fail to call facter. [code:%d] [cmd:%s]", proc.returncode, " ".join(argv))
        raise FacterError(
            f"facter exited with code {proc.returncode}: {stderr.decode(errors='replace').strip()}"
        )

    try:
        parsed = json.loads(stdout.decode(errors="replace"))
    except json.JSONDecodeError as e:
        raise FacterError("fail to parse facter output") from e
    if not isinstance(parsed, dict):
        raise FacterError("fail to parse facter output")

    return {fact: parsed.get(fact) or None for fact in facts}
