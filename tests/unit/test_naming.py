"""
Unit tests for backup naming (dumpstream/backup/naming.py).
"""

import re
from datetime import datetime

from freezegun import freeze_time

from dumpstream.backup.naming import generate_backup_name, render
from dumpstream.models import BackupJobSpec, Engine


def make_spec(**overrides):
    values = dict(
        engine=Engine.POSTGRES,
        database='app',
        destination='s3://backups',
        host='db.internal',
        port=5432,
    )
    values.update(overrides)
    return BackupJobSpec(**values)


WHEN = datetime(2024, 3, 5, 14, 7, 9)


class TestRender:
    """Test placeholder substitution."""

    def test_unknown_placeholder_left_verbatim(self):
        """Test that unknown placeholders survive untouched."""
        assert render('{db_name}_{shard}.gz', {'db_name': 'app'}) == 'app_{shard}.gz'

    def test_none_value_left_verbatim(self):
        """Test that a known placeholder without a value is not replaced."""
        assert render('{port}', {'port': None}) == '{port}'


class TestGenerateBackupName:
    """Test object name generation."""

    def test_default_name(self):
        """Test the fallback prefix_engine_db_timestamp format."""
        name = generate_backup_name(make_spec(), WHEN, 'dump')

        assert name == 'backup_postgres_app_20240305_140709.dump'

    def test_default_name_pattern(self):
        """Test default names match the documented pattern."""
        spec = make_spec(engine=Engine.MYSQL, database='shop', name_prefix='nightly', port=3306)

        name = generate_backup_name(spec, datetime.now(), 'sql.gz')

        assert re.match(r'^nightly_mysql_shop_\d{8}_\d{6}\.sql\.gz$', name)

    def test_all_placeholders_render(self):
        """Test that every documented placeholder is substituted."""
        template = '{db_type}/{db_name}/{date}/{time}-{timestamp}-{host}-{port}.bak'

        name = generate_backup_name(make_spec(name_template=template), WHEN, 'dump')

        assert '{' not in name and '}' not in name
        assert name == 'postgres/app/20240305/140709-20240305_140709-db.internal-5432.bak'

    def test_template_keeps_unknown_placeholders(self):
        """Test a template with a typo still renders the rest."""
        spec = make_spec(name_template='{db_name}_{dbtype}_{date}.dump')

        assert generate_backup_name(spec, WHEN, 'dump') == 'app_{dbtype}_20240305.dump'

    def test_template_leading_slash_stripped(self):
        """Test that names are always relative to the destination."""
        spec = make_spec(name_template='/{db_name}/{date}.dump')

        assert generate_backup_name(spec, WHEN, 'dump') == 'app/20240305.dump'

    def test_sqlite_uses_file_basename(self):
        """Test that SQLite databases are named after their file."""
        spec = make_spec(engine=Engine.SQLITE, database='/var/lib/data/app.db', host=None, port=None)

        name = generate_backup_name(spec, WHEN, 'db.gz')

        assert name == 'backup_sqlite_app.db_20240305_140709.db.gz'

    def test_sqlite_empty_host_and_port(self):
        """Test that host and port render empty for file databases."""
        spec = make_spec(
            engine=Engine.SQLITE, database='app.db', host=None, port=None,
            name_template='{db_name}[{host}:{port}]'
        )

        assert generate_backup_name(spec, WHEN, 'db.gz') == 'app.db[:]'

    @freeze_time("2024-12-31 23:59:58")
    def test_uses_run_start_time(self):
        """Test the timestamp comes from the time passed in."""
        name = generate_backup_name(make_spec(), datetime.now(), 'dump')

        assert name == 'backup_postgres_app_20241231_235958.dump'
