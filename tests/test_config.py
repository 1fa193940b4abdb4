"""
Tests for settings assembly.
"""

from app.core.config import Settings


class TestDatabaseURL:
    def test_postgres_url_names_the_installed_driver(self):
        config = Settings(DATABASE_URL_OVERRIDE=None, POSTGRES_SERVER="db", POSTGRES_PORT="5432", POSTGRES_DB="evals")

        assert config.DATABASE_URL.startswith("postgresql+psycopg2://")
        assert config.DATABASE_URL.endswith("@db:5432/evals")

    def test_override_wins(self):
        config = Settings(DATABASE_URL_OVERRIDE="sqlite:///./local.db")

        assert config.DATABASE_URL == "sqlite:///./local.db"
