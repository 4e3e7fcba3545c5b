"""Source registry: which log files are watched with which rule set."""

import glob
import os
from typing import Dict, List

from models import LogSource, RuleSet
from utils.logger import get_logger
from utils.settings import ConfigError, Settings

logger = get_logger("sources")


def build_sources(settings: Settings, rule_sets: Dict[str, RuleSet]) -> List[LogSource]:
    """
    Create LogSource objects from the ``sources`` setting.

    Each entry is ``{path, ruleset}``; a path containing glob characters is
    expanded once at startup. A path listed literally may be missing as long
    as at least one source is readable.

    Raises:
        ConfigError: If no sources are configured, a rule set is unknown,
            or no source is readable
    """
    entries = settings.get_list("sources")
    if not entries:
        raise ConfigError("No log sources configured (setting 'sources')")

    sources: List[LogSource] = []
    seen = set()
    for entry in entries:
        if not isinstance(entry, dict) or not entry.get("path") or not entry.get("ruleset"):
            raise ConfigError(f"Invalid source entry {entry!r}: needs 'path' and 'ruleset'")

        rule_set_id = str(entry["ruleset"])
        if rule_set_id not in rule_sets:
            raise ConfigError(f"Source {entry['path']} uses unknown rule set '{rule_set_id}'")

        pattern = str(entry["path"])
        if glob.has_magic(pattern):
            paths = sorted(glob.glob(pattern))
            if not paths:
                logger.warning(f"Source pattern {pattern} matches no files")
        else:
            paths = [pattern]

        for path in paths:
            key = (os.path.abspath(path), rule_set_id)
            if key in seen:
                continue
            seen.add(key)
            sources.append(LogSource(path=path, rule_set_id=rule_set_id))

    readable = [s for s in sources if os.path.isfile(s.path) and os.access(s.path, os.R_OK)]
    if not readable:
        raise ConfigError("None of the configured log sources is readable")

    for source in sources:
        if source not in readable:
            logger.warning(f"Log source {source.path} is not readable yet, will keep polling")

    logger.info(f"Watching {len(sources)} log sources ({len(readable)} readable)")
    return sources
