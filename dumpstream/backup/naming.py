"""
Backup object naming.

Templates use {placeholder} syntax:
    db_type, db_name, timestamp (YYYYMMDD_HHMMSS), date (YYYYMMDD),
    time (HHMMSS), host, port

Unknown placeholders are left untouched so a typo in a template never
stops a backup from running.
"""

import os
import re
from datetime import datetime
from typing import Dict, Mapping, Optional

from dumpstream.models import BackupJobSpec, Engine


PLACEHOLDER_RE = re.compile(r'\{(\w+)\}')


def render(template: str, variables: Mapping[str, object]) -> str:
    """
    Substitute known placeholders in a template.

    Args:
        template: Name template, e.g. "{db_name}/{date}/{db_type}_{time}.gz"
        variables: Placeholder values

    Returns:
        Rendered name; unknown placeholders stay verbatim
    """
    def substitute(match):
        key = match.group(1)
        if key in variables and variables[key] is not None:
            return str(variables[key])
        return match.group(0)

    return PLACEHOLDER_RE.sub(substitute, template)


def sqlite_display_name(path: str) -> str:
    """SQLite databases are named after their file, not their full path."""
    return os.path.basename(path.rstrip('/')) or path


def name_variables(spec: BackupJobSpec, when: datetime) -> Dict[str, str]:
    """
    Build the placeholder values for a run.

    Args:
        spec: Job spec
        when: Run start time

    Returns:
        Mapping of placeholder name to value
    """
    db_name = spec.database
    if spec.engine == Engine.SQLITE:
        db_name = sqlite_display_name(db_name)

    return {
        'db_type': spec.engine.value,
        'db_name': db_name,
        'timestamp': when.strftime('%Y%m%d_%H%M%S'),
        'date': when.strftime('%Y%m%d'),
        'time': when.strftime('%H%M%S'),
        'host': spec.host or '',
        'port': '' if spec.port is None else str(spec.port),
    }


def default_name(prefix: str, variables: Mapping[str, str], extension: str) -> str:
    """
    Fallback naming when no template is configured.

    Format: {prefix}_{engine}_{db_name}_{YYYYMMDD_HHMMSS}.{ext}
    """
    return f"{prefix}_{variables['db_type']}_{variables['db_name']}_{variables['timestamp']}.{extension}"


def generate_backup_name(spec: BackupJobSpec, when: datetime, extension: str,
                         template: Optional[str] = None) -> str:
    """
    Generate the destination object name for a run.

    Args:
        spec: Job spec
        when: Run start time
        extension: Engine-specific extension, e.g. "sql.gz"
        template: Overrides spec.name_template when given

    Returns:
        Object name relative to the destination base path
    """
    variables = name_variables(spec, when)
    template = template if template is not None else spec.name_template

    if template:
        return render(template, variables).lstrip('/')

    return default_name(spec.name_prefix or 'backup', variables, extension)
