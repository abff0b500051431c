"""Arquivo: fluxo.py | Objetivo: Regras do fluxo de processos sem dependencia do Flask."""
"""
Nucleo de regras usado pelo painel e pela listagem de processos.

- Normalizacao das linhas do historico (RegistroMovimentacao)
- Resolucao do estado atual por numero de processo
- Agregacoes do painel e classificacao de prazos
- Montagem da consulta a partir dos filtros da tela
- Divisao de importacoes em lotes e controle de respostas fora de ordem
"""

import logging
import math
import uuid
from dataclasses import asdict, dataclass, field, fields, replace
from datetime import date, datetime, time, timedelta, timezone
from typing import Callable, ClassVar, Dict, Iterable, List, Mapping, Optional, Sequence, Union

import pandas as pd
import pytz

logger = logging.getLogger(__name__)

# === Constantes do dominio ===
ORIGEM_RECEBIMENTO = "Recebimento"
ORIGEM_GABINETE = "Gabinete do Coordenador"
ORIGEM_ASSESSORIA = "Assessoria"
ORIGENS_CGOF = [ORIGEM_RECEBIMENTO, ORIGEM_GABINETE, ORIGEM_ASSESSORIA]
CATEGORIA_PADRAO = "Assessoria"

ROTULO_NAO_INFORMADO = "Não Informado"
ROTULO_SEM_DATA = "Sem Data"

PRAZO_VENCIDO = "Vencido"
PRAZO_PROXIMO = "Próximo"
PRAZO_NO_PRAZO = "No Prazo"
JANELA_PRAZO_PROXIMO_DIAS = 5

LIMITE_SETORES_PAINEL = 8
LIMITE_INTERESSADOS_PAINEL = 5
LIMITE_MESES_TENDENCIA = 12
LIMITE_ROTULO_INTERESSADO = 30
LIMITE_RECENTES_PAINEL = 5

TAMANHO_LOTE_IMPORTACAO = 100
ITENS_POR_PAGINA_OPCOES = [10, 20, 50, 100, 500]
ITENS_POR_PAGINA_PADRAO = 20
ITENS_POR_PAGINA_MAXIMO = max(ITENS_POR_PAGINA_OPCOES)
MAXIMO_PAGINAS_VISIVEIS = 5

# Campos aceitos para ordenacao; os de data listam os mais recentes primeiro.
CAMPOS_ORDENACAO = ("data_entrada", "prazo", "atualizado_em", "numero")
CAMPO_ORDENACAO_PADRAO = "data_entrada"
CAMPOS_ORDEM_DESCENDENTE = {"data_entrada", "prazo"}

# Nomes usados pelas linhas exportadas do banco original (camelCase)
ALIASES_CAMPOS = {
    "number": "numero",
    "sector": "setor",
    "CGOF": "origem",
    "cgof": "origem",
    "interested": "interessado",
    "subject": "assunto",
    "observations": "observacoes",
    "category": "categoria",
    "entryDate": "data_entrada",
    "processDate": "data_saida",
    "exitDate": "data_saida",
    "deadline": "prazo",
    "urgent": "urgente",
    "createdAt": "criado_em",
    "updatedAt": "atualizado_em",
    "createdBy": "criado_por",
    "updatedBy": "atualizado_por",
}

_VALORES_VERDADEIROS = {"1", "true", "on", "yes", "sim", "s"}


# === Utilitarios de datas ===
def _vazio(valor) -> bool:
    if valor is None:
        return True
    try:
        if pd.isna(valor):
            return True
    except (TypeError, ValueError):
        pass
    return isinstance(valor, str) and not valor.strip()


def parse_instante(valor) -> Optional[datetime]:
    """Converte datas, datetimes e textos ISO/BR em datetime sem fuso (UTC quando havia fuso)."""
    if _vazio(valor):
        return None
    if isinstance(valor, datetime):
        if valor.tzinfo is not None:
            valor = valor.astimezone(timezone.utc).replace(tzinfo=None)
        return valor
    if isinstance(valor, date):
        return datetime.combine(valor, time.min)
    if not isinstance(valor, str):
        return None

    texto = valor.strip()
    try:
        return parse_instante(datetime.fromisoformat(texto.replace("Z", "+00:00")))
    except ValueError:
        pass
    for formato in ("%d/%m/%Y", "%Y-%m-%d"):
        try:
            return datetime.strptime(texto, formato)
        except ValueError:
            continue
    return None


def parse_dia(valor) -> Optional[date]:
    """Extrai o dia de calendario do valor informado."""
    if isinstance(valor, str) and len(valor.strip()) >= 10:
        # Texto com horario/fuso: vale o dia escrito, sem converter fuso.
        try:
            return datetime.strptime(valor.strip()[:10], "%Y-%m-%d").date()
        except ValueError:
            pass
    if isinstance(valor, datetime):
        return valor.date()
    instante = parse_instante(valor)
    return instante.date() if instante else None


def para_meio_dia_local(valor) -> Optional[datetime]:
    """Fixa a data as 12:00 locais para evitar troca de dia entre fusos."""
    dia = parse_dia(valor)
    if dia is None:
        return None
    return datetime.combine(dia, time(12, 0))


def hoje_local(fuso: str = "America/Sao_Paulo") -> date:
    """Dia corrente no fuso configurado."""
    return datetime.now(pytz.timezone(fuso)).date()


def formatar_data_br(valor) -> str:
    dia = parse_dia(valor)
    return dia.strftime("%d/%m/%Y") if dia else "-"


def _para_bool(valor) -> bool:
    if isinstance(valor, bool):
        return valor
    if _vazio(valor):
        return False
    if isinstance(valor, (int, float)):
        return bool(valor)
    return str(valor).strip().lower() in _VALORES_VERDADEIROS


def _texto(valor) -> str:
    if _vazio(valor):
        return ""
    return str(valor).strip()


def normalizar_origem(valor) -> str:
    """Converte o texto livre de origem para o conjunto fechado do CGOF."""
    texto = _texto(valor).lower()
    if "recebimento" in texto:
        return ORIGEM_RECEBIMENTO
    if "gabinete" in texto:
        return ORIGEM_GABINETE
    return ORIGEM_ASSESSORIA


# === Registro de movimentacao ===
@dataclass
class RegistroMovimentacao:
    """Estado de um processo a partir de uma movimentacao."""

    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    numero: str = ""
    setor: str = ""
    origem: str = ""
    interessado: str = ""
    assunto: str = ""
    observacoes: str = ""
    categoria: str = CATEGORIA_PADRAO
    data_entrada: Optional[datetime] = None
    data_saida: Optional[datetime] = None
    prazo: Optional[datetime] = None
    urgente: bool = False
    criado_em: Optional[datetime] = None
    atualizado_em: Optional[datetime] = None
    criado_por: str = ""
    atualizado_por: str = ""

    def para_dict(self) -> Dict[str, object]:
        dados = asdict(self)
        for chave, valor in dados.items():
            if isinstance(valor, datetime):
                dados[chave] = valor.isoformat()
        return dados


_CAMPOS_DATA = {"data_entrada", "data_saida", "prazo", "criado_em", "atualizado_em"}
_CAMPOS_REGISTRO = {f.name for f in fields(RegistroMovimentacao)}


def normalizar_registro(linha: Mapping[str, object]) -> RegistroMovimentacao:
    """Preenche todos os campos opcionais com o padrao documentado."""
    dados: Dict[str, object] = {}
    for chave, valor in (linha or {}).items():
        nome = ALIASES_CAMPOS.get(chave, chave)
        if nome in _CAMPOS_REGISTRO and (nome not in dados or _vazio(dados[nome])):
            dados[nome] = valor

    registro = RegistroMovimentacao()
    identificador = _texto(dados.get("id"))
    if identificador:
        registro.id = identificador
    for nome in _CAMPOS_REGISTRO - {"id"}:
        valor = dados.get(nome)
        if nome in _CAMPOS_DATA:
            setattr(registro, nome, parse_instante(valor))
        elif nome == "urgente":
            registro.urgente = _para_bool(valor)
        elif nome == "categoria":
            registro.categoria = _texto(valor) or CATEGORIA_PADRAO
        else:
            setattr(registro, nome, _texto(valor))
    return registro


def _como_registro(item: Union[RegistroMovimentacao, Mapping[str, object]]) -> RegistroMovimentacao:
    if isinstance(item, RegistroMovimentacao):
        return item
    return normalizar_registro(item)


# === Resolucao do estado atual ===
def _instante_ou_minimo(valor) -> datetime:
    return parse_instante(valor) or datetime.min


def _instante_desempate(registro: RegistroMovimentacao) -> datetime:
    for valor in (registro.atualizado_em, registro.criado_em, registro.data_entrada):
        if not _vazio(valor):
            return _instante_ou_minimo(valor)
    return datetime.min


def _substitui(candidato: RegistroMovimentacao, atual: RegistroMovimentacao) -> bool:
    entrada_candidato = _instante_ou_minimo(candidato.data_entrada)
    entrada_atual = _instante_ou_minimo(atual.data_entrada)
    if entrada_candidato != entrada_atual:
        return entrada_candidato > entrada_atual
    return _instante_desempate(candidato) > _instante_desempate(atual)


def resolver_estado_atual(
    registros: Iterable[Union[RegistroMovimentacao, Mapping[str, object]]]
) -> Dict[str, RegistroMovimentacao]:
    """Reduz o historico a uma movimentacao por numero (a mais recente).

    A chave e o numero sem espacos nas pontas; maiusculas e minusculas
    continuam distintas. Empates completos mantem o primeiro registro visto.
    """
    atuais: Dict[str, RegistroMovimentacao] = {}
    for item in registros:
        candidato = _como_registro(item)
        chave = (candidato.numero or "").strip()
        existente = atuais.get(chave)
        if existente is None or _substitui(candidato, existente):
            atuais[chave] = candidato
    return atuais


def listar_estado_atual(
    registros: Iterable[Union[RegistroMovimentacao, Mapping[str, object]]]
) -> List[RegistroMovimentacao]:
    return list(resolver_estado_atual(registros).values())


# === Agregacoes do painel ===
def classificar_prazo(prazo, hoje: date) -> str:
    """Classifica o prazo em Vencido, Proximo (ate 5 dias) ou No Prazo."""
    dia = parse_dia(prazo)
    if dia is None:
        return PRAZO_NO_PRAZO
    if dia < hoje:
        return PRAZO_VENCIDO
    if dia <= hoje + timedelta(days=JANELA_PRAZO_PROXIMO_DIAS):
        return PRAZO_PROXIMO
    return PRAZO_NO_PRAZO


@dataclass
class Contagem:
    rotulo: str
    quantidade: int

    def para_dict(self) -> Dict[str, object]:
        return {"rotulo": self.rotulo, "quantidade": self.quantidade}


@dataclass
class ResumoPainel:
    """Indicadores calculados a cada carga do painel (nunca persistidos)."""

    total_processos: int = 0
    total_historico: int = 0
    urgentes: int = 0
    vencidos: int = 0
    proximos: int = 0
    no_prazo: int = 0
    sem_setor: int = 0
    por_setor: List[Contagem] = field(default_factory=list)
    por_origem: List[Contagem] = field(default_factory=list)
    por_interessado: List[Contagem] = field(default_factory=list)
    por_mes: List[Contagem] = field(default_factory=list)
    setores_top: List[Contagem] = field(default_factory=list)
    interessados_top: List[Contagem] = field(default_factory=list)
    tendencia_mensal: List[Contagem] = field(default_factory=list)
    situacao_prazos: List[Contagem] = field(default_factory=list)
    recentes: List[RegistroMovimentacao] = field(default_factory=list)

    def para_dict(self) -> Dict[str, object]:
        dados: Dict[str, object] = {}
        for campo in fields(self):
            valor = getattr(self, campo.name)
            if isinstance(valor, list):
                valor = [item.para_dict() for item in valor]
            dados[campo.name] = valor
        return dados


def rotulo_interessado(valor: str) -> str:
    texto = valor or ROTULO_NAO_INFORMADO
    if len(texto) <= LIMITE_ROTULO_INTERESSADO:
        return texto
    return texto[:LIMITE_ROTULO_INTERESSADO].rstrip() + "..."


def _contar(chaves: Iterable[str]) -> List[Contagem]:
    """Conta ocorrencias mantendo a ordem da primeira aparicao de cada chave."""
    ordem: List[str] = []
    totais: Dict[str, int] = {}
    for chave in chaves:
        if chave not in totais:
            ordem.append(chave)
            totais[chave] = 0
        totais[chave] += 1
    return [Contagem(chave, totais[chave]) for chave in ordem]


def _maiores(contagens: Sequence[Contagem], limite: int) -> List[Contagem]:
    # Empate na quantidade: vale a ordem de primeira aparicao.
    ordenadas = sorted(
        enumerate(contagens), key=lambda par: (-par[1].quantidade, par[0])
    )
    return [contagem for _, contagem in ordenadas[:limite]]


def _mes_entrada(registro: RegistroMovimentacao) -> Optional[str]:
    dia = parse_dia(registro.data_entrada)
    return dia.strftime("%Y-%m") if dia else None


def agregar_painel(
    atuais: Iterable[RegistroMovimentacao],
    hoje: date,
    total_historico: int = 0,
    historico_recente: Sequence[RegistroMovimentacao] = (),
) -> ResumoPainel:
    """Calcula os totais do painel a partir do estado atual dos processos."""
    processos = list(atuais)
    resumo = ResumoPainel(total_processos=len(processos), total_historico=int(total_historico or 0))

    setores: List[str] = []
    origens: List[str] = []
    interessados: List[str] = []
    meses: List[str] = []
    for registro in processos:
        if registro.urgente:
            resumo.urgentes += 1

        situacao = classificar_prazo(registro.prazo, hoje)
        if situacao == PRAZO_VENCIDO:
            resumo.vencidos += 1
        elif situacao == PRAZO_PROXIMO:
            resumo.proximos += 1
        else:
            resumo.no_prazo += 1

        setor = (registro.setor or "").strip()
        if not setor:
            resumo.sem_setor += 1
        setores.append(setor or ROTULO_NAO_INFORMADO)
        origens.append((registro.origem or "").strip() or ROTULO_NAO_INFORMADO)
        interessados.append((registro.interessado or "").strip())
        meses.append(_mes_entrada(registro) or ROTULO_SEM_DATA)

    resumo.por_setor = _contar(setores)
    resumo.por_origem = _contar(origens)
    resumo.por_interessado = [
        Contagem(rotulo_interessado(c.rotulo), c.quantidade) for c in _contar(interessados)
    ]
    resumo.por_mes = _contar(meses)

    resumo.setores_top = _maiores(resumo.por_setor, LIMITE_SETORES_PAINEL)
    resumo.interessados_top = _maiores(resumo.por_interessado, LIMITE_INTERESSADOS_PAINEL)

    datados = sorted(
        (c for c in resumo.por_mes if c.rotulo != ROTULO_SEM_DATA), key=lambda c: c.rotulo
    )
    resumo.tendencia_mensal = [
        Contagem(f"{c.rotulo[5:7]}/{c.rotulo[:4]}", c.quantidade)
        for c in datados[-LIMITE_MESES_TENDENCIA:]
    ]

    resumo.situacao_prazos = [
        c
        for c in (
            Contagem(PRAZO_NO_PRAZO, resumo.no_prazo),
            Contagem(PRAZO_PROXIMO, resumo.proximos),
            Contagem(PRAZO_VENCIDO, resumo.vencidos),
        )
        if c.quantidade > 0
    ]
    # Movimentacoes brutas (sem deduplicar), da entrada mais recente para a mais antiga.
    resumo.recentes = sorted(
        (_como_registro(item) for item in historico_recente),
        key=lambda registro: _instante_ou_minimo(registro.data_entrada),
        reverse=True,
    )[:LIMITE_RECENTES_PAINEL]
    return resumo


# === Filtros da listagem e montagem da consulta ===
def _inteiro_positivo(valor, padrao: int) -> int:
    try:
        numero = int(valor)
    except (TypeError, ValueError):
        return padrao
    return numero if numero > 0 else padrao


def _itens_por_pagina(valor) -> int:
    # Acima da maior opcao da tela vale a maior opcao.
    return min(_inteiro_positivo(valor, ITENS_POR_PAGINA_PADRAO), ITENS_POR_PAGINA_MAXIMO)


_CAMPOS_TEXTO_FILTRO = ("origem", "setor", "data_entrada_inicio", "data_entrada_fim")
_CAMPOS_BOOLEANOS_FILTRO = ("urgente", "vencido", "setor_vazio", "saida_vazia")


@dataclass
class EstadoFiltros:
    """Selecao da tela de processos, salva entre recargas (versionada)."""

    VERSAO: ClassVar[int] = 1

    termo_busca: str = ""
    origem: str = ""
    setor: str = ""
    data_entrada_inicio: str = ""
    data_entrada_fim: str = ""
    urgente: bool = False
    vencido: bool = False
    setor_vazio: bool = False
    saida_vazia: bool = False
    ordenar_por: str = ""
    itens_por_pagina: int = ITENS_POR_PAGINA_PADRAO
    pagina: int = 1

    @classmethod
    def limpo(cls) -> "EstadoFiltros":
        return cls()

    def para_dict(self) -> Dict[str, object]:
        dados = asdict(self)
        dados["versao"] = self.VERSAO
        return dados

    @classmethod
    def de_dict(cls, dados, exigir_versao: bool = True) -> "EstadoFiltros":
        """Carrega o estado salvo; ausente, invalido ou de outra versao vira o padrao."""
        if not isinstance(dados, Mapping):
            return cls()
        if exigir_versao and dados.get("versao") != cls.VERSAO:
            return cls()
        estado = cls()
        for campo in ("termo_busca", "ordenar_por") + _CAMPOS_TEXTO_FILTRO:
            if campo in dados:
                setattr(estado, campo, _texto(dados.get(campo)))
        for campo in _CAMPOS_BOOLEANOS_FILTRO:
            if campo in dados:
                setattr(estado, campo, _para_bool(dados.get(campo)))
        if "itens_por_pagina" in dados:
            estado.itens_por_pagina = _itens_por_pagina(dados.get("itens_por_pagina"))
        if "pagina" in dados:
            estado.pagina = _inteiro_positivo(dados.get("pagina"), 1)
        return estado

    def com_alteracoes(self, alteracoes: Mapping[str, object]) -> "EstadoFiltros":
        """Aplica mudancas; qualquer filtro alterado volta para a pagina 1."""
        conhecidas = {k: v for k, v in (alteracoes or {}).items() if k in _CAMPOS_ESTADO}
        mescla = self.para_dict()
        mescla.update(conhecidas)
        novo = type(self).de_dict(mescla)
        if "pagina" not in conhecidas and replace(novo, pagina=self.pagina) != self:
            novo.pagina = 1
        return novo


_CAMPOS_ESTADO = {f.name for f in fields(EstadoFiltros)}


def montar_consulta(estado: EstadoFiltros) -> Dict[str, object]:
    """Traduz o estado da tela no descritor enviado ao historico."""
    filtros: Dict[str, object] = {}
    for campo in _CAMPOS_TEXTO_FILTRO:
        valor = _texto(getattr(estado, campo))
        if valor:
            filtros[campo] = valor
    for campo in _CAMPOS_BOOLEANOS_FILTRO:
        if getattr(estado, campo) is True:
            filtros[campo] = True

    campo_ordem = estado.ordenar_por if estado.ordenar_por in CAMPOS_ORDENACAO else CAMPO_ORDENACAO_PADRAO
    consulta: Dict[str, object] = {
        "filtros": filtros,
        "ordenacao": {
            "campo": campo_ordem,
            "ordem": "desc" if campo_ordem in CAMPOS_ORDEM_DESCENDENTE else "asc",
        },
        "pagina": _inteiro_positivo(estado.pagina, 1),
        "itens_por_pagina": _itens_por_pagina(estado.itens_por_pagina),
    }
    termo = _texto(estado.termo_busca)
    if termo:
        consulta["termo_busca"] = termo
    return consulta


# === Paginacao ===
def total_paginas(total: int, por_pagina: int) -> int:
    if por_pagina <= 0:
        return 0
    return math.ceil(max(total, 0) / por_pagina)


def janela_paginas(pagina: int, total: int, maximo: int = MAXIMO_PAGINAS_VISIVEIS) -> List[int]:
    """Numeros de pagina exibidos ao redor da pagina atual."""
    if total <= maximo:
        return list(range(1, total + 1))
    inicio = max(1, pagina - 2)
    fim = min(total, pagina + 2)
    if inicio == 1:
        fim = min(total, maximo)
    if fim == total:
        inicio = max(1, total - maximo + 1)
    return list(range(inicio, fim + 1))


# === Importacao em lotes ===
def dividir_em_lotes(itens: Sequence, tamanho: int = TAMANHO_LOTE_IMPORTACAO) -> List[List]:
    tamanho = max(1, int(tamanho))
    return [list(itens[i : i + tamanho]) for i in range(0, len(itens), tamanho)]


def importar_em_lotes(
    registros: Sequence[RegistroMovimentacao],
    gravar_lote: Callable[[List[RegistroMovimentacao]], None],
    tamanho: int = TAMANHO_LOTE_IMPORTACAO,
) -> int:
    """Grava os registros lote a lote; a primeira falha interrompe os seguintes.

    Lotes ja gravados nao sao desfeitos. Retorna a quantidade de lotes gravados.
    """
    lotes = dividir_em_lotes(registros, tamanho)
    for indice, lote in enumerate(lotes, start=1):
        try:
            gravar_lote(lote)
        except Exception:
            logger.error(
                "Lote %s/%s da importacao falhou; %s lote(s) ja gravado(s).",
                indice,
                len(lotes),
                indice - 1,
            )
            raise
    return len(lotes)


# === Respostas fora de ordem ===
class GuardaSequencia:
    """Aplica apenas respostas mais novas que a ultima ja aplicada."""

    def __init__(self):
        self._emitidas = 0
        self._aplicada = 0

    def emitir(self) -> int:
        self._emitidas += 1
        return self._emitidas

    def aceitar(self, ticket: int) -> bool:
        if ticket <= self._aplicada:
            return False
        self._aplicada = ticket
        return True

    @property
    def ultima_aplicada(self) -> int:
        return self._aplicada
