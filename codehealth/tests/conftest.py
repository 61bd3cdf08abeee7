import pytest

from codehealth.main import resolve_settings
from codehealth.storage import init_db, upsert_application


@pytest.fixture
def db_path(tmp_path):
    path = str(tmp_path / "codehealth.db")
    init_db(path)
    return path


@pytest.fixture
def settings(tmp_path, db_path):
    settings = resolve_settings(None)
    settings["paths"]["db_path"] = db_path
    settings["paths"]["tmp_dir"] = str(tmp_path / "tmp")
    settings["execution"]["command_prefix"] = []
    settings["scanners"]["drift"]["golden_path"] = str(tmp_path / "golden_deployment")
    return settings


@pytest.fixture
def app_dir(tmp_path):
    root = tmp_path / "apps" / "billing"
    (root / "app" / "models").mkdir(parents=True)
    return root


@pytest.fixture
def app(db_path, app_dir):
    return upsert_application(db_path, "billing", str(app_dir))
