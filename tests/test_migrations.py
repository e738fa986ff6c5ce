import argparse
from pathlib import Path

import pytest
import sqlalchemy as sa
from alembic import command
from alembic.config import Config

from app.config import settings

ROOT = Path(__file__).resolve().parents[1]


def alembic_config(*x_args):
    # sin archivo ini: env.py no reconfigura el logging de la suite
    cfg = Config(cmd_opts=argparse.Namespace(x=list(x_args)))
    cfg.set_main_option("script_location", str(ROOT / "alembic"))
    return cfg


def test_upgrade_and_downgrade_on_explicit_db_url(tmp_path):
    url = f"sqlite:///{tmp_path / 'migrated.db'}"
    cfg = alembic_config(f"db_url={url}")

    command.upgrade(cfg, "head")
    engine = sa.create_engine(url)
    insp = sa.inspect(engine)
    assert {"system_settings", "icm_update_state", "icm_snapshots"} <= set(insp.get_table_names())
    assert "updated_by" in {c["name"] for c in insp.get_columns("system_settings")}

    command.downgrade(cfg, "base")
    assert "icm_snapshots" not in sa.inspect(engine).get_table_names()
    engine.dispose()


def test_missing_database_url_is_reported(monkeypatch):
    monkeypatch.setattr(settings, "DATABASE_URL", "")
    with pytest.raises(RuntimeError, match="DATABASE_URL no está configurada"):
        command.upgrade(alembic_config(), "head")
