from datetime import date, datetime

from fluxo import (
    PRAZO_NO_PRAZO,
    PRAZO_PROXIMO,
    PRAZO_VENCIDO,
    ROTULO_NAO_INFORMADO,
    ROTULO_SEM_DATA,
    RegistroMovimentacao,
    agregar_painel,
    classificar_prazo,
    rotulo_interessado,
)

HOJE = date(2024, 3, 15)


def _proc(numero, **campos):
    campos.setdefault("data_entrada", datetime(2024, 3, 1, 12))
    return RegistroMovimentacao(numero=numero, **campos)


def test_classificacao_de_prazo():
    assert classificar_prazo(datetime(2024, 3, 14, 12), HOJE) == PRAZO_VENCIDO
    assert classificar_prazo(datetime(2024, 3, 15, 12), HOJE) == PRAZO_PROXIMO
    assert classificar_prazo(datetime(2024, 3, 20, 12), HOJE) == PRAZO_PROXIMO
    assert classificar_prazo(datetime(2024, 3, 21, 12), HOJE) == PRAZO_NO_PRAZO
    assert classificar_prazo(None, HOJE) == PRAZO_NO_PRAZO


def test_faixas_de_prazo_somam_total():
    atuais = [
        _proc("1", prazo=datetime(2024, 3, 10, 12)),
        _proc("2", prazo=datetime(2024, 3, 16, 12)),
        _proc("3", prazo=datetime(2024, 5, 1, 12)),
        _proc("4"),
        _proc("5", prazo=datetime(2024, 1, 1, 12), urgente=True),
    ]

    resumo = agregar_painel(atuais, HOJE, total_historico=9)

    assert resumo.total_processos == 5
    assert resumo.total_historico == 9
    assert (resumo.vencidos, resumo.proximos, resumo.no_prazo) == (2, 1, 2)
    assert resumo.vencidos + resumo.proximos + resumo.no_prazo == resumo.total_processos
    assert resumo.urgentes == 1
    assert [c.rotulo for c in resumo.situacao_prazos] == [PRAZO_NO_PRAZO, PRAZO_PROXIMO, PRAZO_VENCIDO]


def test_agrupamentos_cobrem_todos_os_processos():
    atuais = [
        _proc("1", setor="Financeiro", origem="Recebimento", interessado="Prefeitura"),
        _proc("2", setor="", origem="", interessado=""),
        _proc("3", setor="Financeiro", origem="Assessoria", data_entrada=None),
        _proc("4", setor="Juridico", origem="Recebimento", data_entrada=datetime(2023, 12, 5, 12)),
    ]

    resumo = agregar_painel(atuais, HOJE)

    for grupo in (resumo.por_setor, resumo.por_origem, resumo.por_interessado, resumo.por_mes):
        assert sum(c.quantidade for c in grupo) == resumo.total_processos
    assert resumo.sem_setor == 1
    setores = {c.rotulo: c.quantidade for c in resumo.por_setor}
    assert setores == {"Financeiro": 2, ROTULO_NAO_INFORMADO: 1, "Juridico": 1}
    meses = {c.rotulo: c.quantidade for c in resumo.por_mes}
    assert meses[ROTULO_SEM_DATA] == 1
    assert [c.rotulo for c in resumo.tendencia_mensal] == ["12/2023", "03/2024"]


def test_top_setores_limita_oito_e_desempata_pela_primeira_aparicao():
    atuais = []
    for indice in range(10):
        atuais.append(_proc(f"s{indice}", setor=f"Setor {indice}"))
    atuais.append(_proc("extra", setor="Setor 9"))

    resumo = agregar_painel(atuais, HOJE)

    rotulos = [c.rotulo for c in resumo.setores_top]
    assert len(rotulos) == 8
    assert rotulos[0] == "Setor 9"
    assert rotulos[1:] == [f"Setor {i}" for i in range(7)]


def test_tendencia_mensal_limitada_aos_ultimos_doze_meses():
    atuais = [
        _proc(str(mes), data_entrada=datetime(2023 + (mes - 1) // 12, (mes - 1) % 12 + 1, 10, 12))
        for mes in range(1, 16)
    ]

    resumo = agregar_painel(atuais, HOJE)

    rotulos = [c.rotulo for c in resumo.tendencia_mensal]
    assert len(rotulos) == 12
    assert rotulos[0] == "04/2023"
    assert rotulos[-1] == "03/2024"


def test_rotulo_interessado_truncado():
    longo = "Secretaria Municipal de Infraestrutura Urbana"
    assert rotulo_interessado(longo) == longo[:30].rstrip() + "..."
    assert rotulo_interessado("") == ROTULO_NAO_INFORMADO
    assert rotulo_interessado("Curto") == "Curto"


def test_painel_vazio():
    resumo = agregar_painel([], HOJE)

    assert resumo.total_processos == 0
    assert resumo.setores_top == []
    assert resumo.tendencia_mensal == []
    assert resumo.situacao_prazos == []
    assert resumo.para_dict()["por_setor"] == []


def test_faixas_de_prazo_exemplo_de_junho():
    hoje = date(2024, 6, 10)

    assert classificar_prazo("2024-06-09", hoje) == PRAZO_VENCIDO
    assert classificar_prazo("2024-06-14", hoje) == PRAZO_PROXIMO
    assert classificar_prazo("2024-06-16", hoje) == PRAZO_NO_PRAZO
    assert classificar_prazo(None, hoje) == PRAZO_NO_PRAZO


def test_recentes_vem_do_historico_bruto():
    historico = [
        _proc("1", setor=f"S{dia}", data_entrada=datetime(2024, 3, dia, 12)) for dia in range(1, 8)
    ]

    resumo = agregar_painel(historico[-1:], HOJE, historico_recente=historico)

    assert [r.setor for r in resumo.recentes] == ["S7", "S6", "S5", "S4", "S3"]
    assert resumo.para_dict()["recentes"][0]["numero"] == "1"
    assert agregar_painel([], HOJE).recentes == []
