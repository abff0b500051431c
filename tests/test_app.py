from datetime import datetime
from io import BytesIO

import pandas as pd
import pytest

import app as app_module
from erros import ErroTransporte
from fluxo import RegistroMovimentacao


def _criar(cliente, **dados):
    dados.setdefault("numero", "100/2024")
    dados.setdefault("data_entrada", "2024-03-01")
    resposta = cliente.post("/api/processos", json=dados)
    assert resposta.status_code == 200, resposta.get_json()
    return resposta.get_json()["processo"]


def _acoes_registradas():
    with app_module.app.app_context():
        return [entrada.acao for entrada in app_module.LogAuditoria.query.all()]


def test_health(cliente):
    assert cliente.get("/health").get_json() == {"ok": True}


def test_rotas_exigem_login(cliente):
    resposta = cliente.get("/api/processos")

    assert resposta.status_code == 401
    assert resposta.get_json()["ok"] is False


def test_login_invalido_e_logout_registrado(cliente, admin):
    resposta = cliente.post("/login", json={"email": admin["email"], "senha": "errada"})
    assert resposta.status_code == 401
    assert resposta.get_json()["erro"] == "Email ou senha invalidos."

    assert cliente.post("/login", json={"email": admin["email"].upper(), "senha": admin["senha"]}).status_code == 200
    assert cliente.post("/logout").status_code == 200
    assert cliente.get("/api/painel").status_code == 401

    acoes = _acoes_registradas()
    assert "LOGIN" in acoes and "LOGOUT" in acoes


def test_salvar_preserva_criacao_e_normaliza_origem(cliente_admin):
    criado = _criar(cliente_admin, origem="Setor de recebimento", setor="Protocolo")
    assert criado["origem"] == "Recebimento"
    assert criado["data_entrada"] == "2024-03-01T12:00:00"

    atualizado = _criar(cliente_admin, id=criado["id"], setor="Gabinete", origem="gabinete")

    assert atualizado["id"] == criado["id"]
    assert atualizado["setor"] == "Gabinete"
    assert atualizado["origem"] == "Gabinete do Coordenador"
    assert atualizado["criado_em"] == criado["criado_em"]
    assert atualizado["criado_por"] == criado["criado_por"]
    assert datetime.fromisoformat(atualizado["atualizado_em"]) >= datetime.fromisoformat(criado["atualizado_em"])
    assert _acoes_registradas().count("CREATE") == 1
    assert "UPDATE" in _acoes_registradas()


def test_salvar_sem_data_de_entrada(cliente_admin):
    resposta = cliente_admin.post("/api/processos", json={"numero": "1/2024"})

    assert resposta.status_code == 400
    assert "Data de entrada" in resposta.get_json()["erro"]


def test_painel_usa_estado_atual(cliente_admin):
    _criar(cliente_admin, numero="1/2024", data_entrada="2024-01-10", setor="Protocolo")
    _criar(cliente_admin, numero="1/2024", data_entrada="2024-02-10", setor="Financeiro", urgente=True)
    _criar(cliente_admin, numero="2/2024", data_entrada="2024-02-11", setor="")

    painel = cliente_admin.get("/api/painel").get_json()["painel"]

    assert painel["total_processos"] == 2
    assert painel["total_historico"] == 3
    assert painel["urgentes"] == 1
    assert painel["sem_setor"] == 1
    setores = {c["rotulo"]: c["quantidade"] for c in painel["por_setor"]}
    assert setores == {"Financeiro": 1, "Não Informado": 1}
    recentes = [(r["numero"], r["setor"]) for r in painel["recentes"]]
    assert recentes == [("2/2024", ""), ("1/2024", "Financeiro"), ("1/2024", "Protocolo")]


def test_historico_e_exclusao_da_ultima_movimentacao(cliente_admin, admin):
    _criar(cliente_admin, numero="5/2024", data_entrada="2024-01-10", setor="Protocolo")
    _criar(cliente_admin, numero="5/2024", data_entrada="2024-02-10", setor="Financeiro")

    historico = cliente_admin.get("/api/processos/historico?numero=5/2024").get_json()["historico"]
    assert [h["setor"] for h in historico] == ["Protocolo", "Financeiro"]

    negado = cliente_admin.post(
        "/api/processos/historico/excluir-ultima", json={"numero": "5/2024", "senha": "errada"}
    )
    assert negado.status_code == 401

    removido = cliente_admin.post(
        "/api/processos/historico/excluir-ultima", json={"numero": "5/2024", "senha": admin["senha"]}
    )
    assert removido.get_json()["removido"]["setor"] == "Financeiro"

    historico = cliente_admin.get("/api/processos/historico?numero=5/2024").get_json()["historico"]
    assert [h["setor"] for h in historico] == ["Protocolo"]


def test_listagem_filtra_pagina_e_ecoa_sequencia(cliente_admin):
    for indice in range(3):
        _criar(cliente_admin, numero=f"{indice}/2024", data_entrada=f"2024-03-0{indice + 1}", urgente=indice == 1)
    _criar(cliente_admin, numero="9/2024", data_entrada="2024-03-09", interessado="Prefeitura de Campinas")

    resposta = cliente_admin.get("/api/processos?urgente=true&seq=7").get_json()
    assert resposta["seq"] == 7
    assert resposta["total"] == 1
    assert resposta["processos"][0]["numero"] == "1/2024"

    # Filtros ficam salvos na sessao entre chamadas.
    resposta = cliente_admin.get("/api/processos").get_json()
    assert resposta["total"] == 1

    cliente_admin.delete("/api/processos/preferencias")
    resposta = cliente_admin.get("/api/processos?termo_busca=campinas").get_json()
    assert [p["numero"] for p in resposta["processos"]] == ["9/2024"]

    cliente_admin.delete("/api/processos/preferencias")
    resposta = cliente_admin.get("/api/processos?itens_por_pagina=2&pagina=2").get_json()
    assert resposta["total"] == 4
    assert resposta["total_paginas"] == 2
    assert [p["numero"] for p in resposta["processos"]] == ["1/2024", "0/2024"]


def test_filtro_periodo_inclui_dia_final(cliente_admin):
    _criar(cliente_admin, numero="A", data_entrada="2024-03-10")
    _criar(cliente_admin, numero="B", data_entrada="2024-03-11")

    resposta = cliente_admin.get(
        "/api/processos?data_entrada_inicio=2024-03-01&data_entrada_fim=2024-03-10"
    ).get_json()

    assert [p["numero"] for p in resposta["processos"]] == ["A"]


def test_preferencias(cliente_admin):
    salvo = cliente_admin.post("/api/processos/preferencias", json={"setor": "Juridico"}).get_json()
    assert salvo["filtros"]["setor"] == "Juridico"
    assert salvo["debounce_ms"] == 500

    assert cliente_admin.get("/api/processos/preferencias").get_json()["filtros"]["setor"] == "Juridico"
    limpo = cliente_admin.delete("/api/processos/preferencias").get_json()
    assert limpo["filtros"]["setor"] == ""


def test_lote_e_sugestoes(cliente_admin):
    a = _criar(cliente_admin, numero="A", setor="Protocolo")
    b = _criar(cliente_admin, numero="B", setor="Financeiro")

    resposta = cliente_admin.patch(
        "/api/processos/lote", json={"ids": [a["id"], b["id"]], "alteracoes": {"setor": "Arquivo"}}
    )
    assert resposta.get_json()["atualizados"] == 2
    assert cliente_admin.get("/api/processos/sugestoes/setor").get_json()["valores"] == ["Arquivo"]

    proibido = cliente_admin.patch(
        "/api/processos/lote", json={"ids": [a["id"]], "alteracoes": {"numero": "X"}}
    )
    assert proibido.status_code == 400

    resposta = cliente_admin.delete("/api/processos/lote", json={"ids": [a["id"], b["id"]]})
    assert resposta.get_json()["excluidos"] == 2


def test_usuarios(cliente_admin, admin):
    novo = {"nome": "Maria", "email": "maria@fluxo.gov.br", "senha": "senha123"}
    assert cliente_admin.post("/api/usuarios", json=novo).status_code == 200

    duplicado = cliente_admin.post("/api/usuarios", json=dict(novo, email="MARIA@fluxo.gov.br"))
    assert duplicado.status_code == 409

    sem_senha = cliente_admin.post("/api/usuarios", json={"nome": "Joao", "email": "joao@fluxo.gov.br"})
    assert sem_senha.status_code == 400

    assert cliente_admin.delete(f"/api/usuarios/{admin['id']}").status_code == 400
    assert len(cliente_admin.get("/api/usuarios").get_json()["usuarios"]) == 2
    assert cliente_admin.get("/api/logs").get_json()["logs"][0]["acao"] == "USER_MGMT"


def test_usuario_comum_nao_acessa_rotas_admin(cliente_admin):
    cliente_admin.post("/api/usuarios", json={"nome": "Ana", "email": "ana@fluxo.gov.br", "senha": "senha123"})
    cliente_admin.post("/logout")
    cliente_admin.post("/login", json={"email": "ana@fluxo.gov.br", "senha": "senha123"})

    assert cliente_admin.get("/api/logs").status_code == 403
    assert cliente_admin.get("/api/painel").status_code == 200


def test_trocar_senha(cliente_admin, admin):
    errada = cliente_admin.post("/perfil/senha", json={"senha_atual": "x", "senha_nova": "nova12345"})
    assert errada.status_code == 401

    certa = cliente_admin.post(
        "/perfil/senha", json={"senha_atual": admin["senha"], "senha_nova": "nova12345"}
    )
    assert certa.status_code == 200


def test_importar_planilha(cliente_admin):
    linhas = [
        {"Número": f"{i}/2024", "Entrada": "15/03/2024", "Localização": "Protocolo", "Urgente": "sim"}
        for i in range(150)
    ]
    buffer = BytesIO()
    pd.DataFrame(linhas).to_excel(buffer, index=False)
    buffer.seek(0)

    resposta = cliente_admin.post(
        "/api/processos/importar",
        data={"arquivo": (buffer, "planilha.xlsx")},
        content_type="multipart/form-data",
    )

    assert resposta.status_code == 200, resposta.get_json()
    assert resposta.get_json()["importados"] == 150
    painel = cliente_admin.get("/api/painel").get_json()["painel"]
    assert painel["total_processos"] == 150
    assert painel["urgentes"] == 150
    assert _acoes_registradas().count("IMPORT") == 1


def test_importar_formato_invalido(cliente_admin):
    resposta = cliente_admin.post(
        "/api/processos/importar",
        data={"arquivo": (BytesIO(b"a;b"), "planilha.csv")},
        content_type="multipart/form-data",
    )

    assert resposta.status_code == 400


def test_falha_de_lote_mantem_lotes_anteriores(contexto, admin, monkeypatch):
    usuario = contexto.session.get(app_module.Usuario, admin["id"])
    registros = [
        RegistroMovimentacao(numero=str(i), data_entrada=datetime(2024, 3, 1, 12))
        for i in range(5)
    ]
    confirmar_original = app_module._confirmar
    chamadas = []

    def confirmar_falhando_no_segundo_lote(mensagem="Falha ao salvar no banco de dados."):
        chamadas.append(mensagem)
        if len(chamadas) == 2:
            contexto.session.rollback()
            raise ErroTransporte(mensagem)
        confirmar_original(mensagem)

    monkeypatch.setattr(app_module, "_confirmar", confirmar_falhando_no_segundo_lote)

    with pytest.raises(ErroTransporte) as erro:
        app_module.importar_registros(registros, usuario, tamanho_lote=2)

    assert "2 registro(s) ja gravado(s)" in erro.value.mensagem
    assert len(chamadas) == 2
    assert app_module.Processo.query.count() == 2


def test_exportacoes_usam_estado_atual(cliente_admin):
    _criar(cliente_admin, numero="1/2024", data_entrada="2024-01-10", setor="Protocolo")
    _criar(cliente_admin, numero="1/2024", data_entrada="2024-02-10", setor="Financeiro")

    planilha = cliente_admin.get("/api/processos/exportar.xlsx")
    assert planilha.status_code == 200
    df = pd.read_excel(BytesIO(planilha.data), dtype=str)
    assert list(df["Localização"]) == ["Financeiro"]

    pdf = cliente_admin.get("/api/processos/exportar.pdf")
    assert pdf.status_code == 200
    assert pdf.data.startswith(b"%PDF")


def test_comando_criar_admin(banco):
    runner = app_module.app.test_cli_runner()
    argumentos = ["criar-admin", "--nome", "Chefe", "--email", "chefe@fluxo.gov.br", "--senha", "segredo123"]

    primeiro = runner.invoke(args=argumentos)
    assert primeiro.exit_code == 0, primeiro.output
    assert "chefe@fluxo.gov.br" in primeiro.output

    repetido = runner.invoke(args=argumentos)
    assert repetido.exit_code != 0
    assert "Ja existe" in repetido.output


def test_painel_lista_cinco_movimentacoes_mais_recentes(cliente_admin):
    for dia in range(1, 8):
        _criar(cliente_admin, numero="7/2024", data_entrada=f"2024-04-0{dia}", setor=f"Setor {dia}")

    painel = cliente_admin.get("/api/painel").get_json()["painel"]

    assert painel["total_processos"] == 1
    assert [r["setor"] for r in painel["recentes"]] == [f"Setor {dia}" for dia in (7, 6, 5, 4, 3)]


def test_parametros_desconhecidos_na_listagem_sao_ignorados(cliente_admin):
    _criar(cliente_admin, numero="1/2024")

    resposta = cliente_admin.get("/api/processos?self=x&alteracoes=y")
    assert resposta.status_code == 200
    assert resposta.get_json()["total"] == 1

    salvo = cliente_admin.post("/api/processos/preferencias", json={"self": "x", "setor": "Arquivo"})
    assert salvo.status_code == 200
    assert salvo.get_json()["filtros"]["setor"] == "Arquivo"


def test_tamanho_de_pagina_limitado_a_maior_opcao(cliente_admin):
    _criar(cliente_admin, numero="1/2024")

    resposta = cliente_admin.get("/api/processos?itens_por_pagina=100000").get_json()

    assert resposta["itens_por_pagina"] == 500
    assert resposta["filtros"]["itens_por_pagina"] == 500
