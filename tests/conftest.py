import os
import tempfile

import pytest

# Banco SQLite descartavel; precisa estar definido antes de importar o app.
_DIRETORIO_BANCO = tempfile.mkdtemp(prefix="fluxo-processos-testes-")
os.environ["DATABASE_URL"] = "sqlite:///" + os.path.join(_DIRETORIO_BANCO, "testes.db")
os.environ.setdefault("SECRET_KEY", "chave-de-testes")

import app as app_module  # noqa: E402

ADMIN_EMAIL = "admin@fluxo.gov.br"
ADMIN_SENHA = "segredo123"


@pytest.fixture
def banco():
    flask_app = app_module.app
    flask_app.config["TESTING"] = True
    with flask_app.app_context():
        app_module.db.drop_all()
        app_module.db.create_all()
    yield app_module.db
    with flask_app.app_context():
        app_module.db.session.remove()


@pytest.fixture
def contexto(banco):
    with app_module.app.app_context():
        yield app_module.db


@pytest.fixture
def admin(banco):
    with app_module.app.app_context():
        usuario = app_module.criar_administrador_inicial("Admin Fluxo", ADMIN_EMAIL, ADMIN_SENHA)
        return {"id": usuario.id, "email": ADMIN_EMAIL, "senha": ADMIN_SENHA}


@pytest.fixture
def cliente(banco):
    return app_module.app.test_client()


@pytest.fixture
def cliente_admin(cliente, admin):
    resposta = cliente.post("/login", json={"email": admin["email"], "senha": admin["senha"]})
    assert resposta.status_code == 200
    return cliente
