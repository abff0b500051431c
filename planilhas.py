"""Arquivo: planilhas.py | Objetivo: Leitura de planilhas de importacao e geracao dos relatorios Excel/PDF."""

import logging
import numbers
import os
import re
import unicodedata
from datetime import date, datetime, timedelta
from io import BytesIO
from typing import Dict, Iterable, List, Mapping, Optional

import pandas as pd
from reportlab.lib import colors
from reportlab.lib.pagesizes import A4, landscape
from reportlab.lib.styles import getSampleStyleSheet
from reportlab.lib.units import mm
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from fluxo import (
    CATEGORIA_PADRAO,
    ORIGEM_ASSESSORIA,
    RegistroMovimentacao,
    classificar_prazo,
    formatar_data_br,
    normalizar_origem,
    para_meio_dia_local,
    parse_instante,
)

logger = logging.getLogger(__name__)

# Cabecalhos aceitos para cada campo (comparacao sem acento/caixa/pontuacao)
SINONIMOS_COLUNAS: Dict[str, List[str]] = {
    "data_entrada": ["Entrada", "Data Entrada", "Data da Entrada", "Data de Entrada"],
    "setor": ["Localização", "Setor Atual", "Setor", "Destino"],
    "origem": ["Origem (CGOF)", "Origem", "CGOF", "Setor de Entrada"],
    "numero": ["Número", "Numero", "Processo"],
    "data_saida": ["saida", "Saída", "Data Saída", "Data de Saída"],
    "prazo": ["Retorno", "Prazo", "Data de Retorno", "Data Limite"],
    "interessado": ["Interessada", "Interessado", "Interessados", "Parte"],
    "assunto": ["Assunto", "Descricao", "Objeto"],
    "urgente": ["Urgente", "Prioridade", "Urgência"],
    "observacoes": ["Observações", "Obs", "Anotação"],
}
NUMERO_SEM_IDENTIFICACAO = "S/N"

# Dia zero das datas seriais do Excel (inclui o falso 29/02/1900)
EPOCA_SERIAL_PLANILHA = datetime(1899, 12, 30)
MAIOR_SERIAL_PLANILHA = 2958465

EXTENSOES_PLANILHA = {".xlsx", ".xlsm", ".xltx", ".xltm"}

COLUNAS_EXPORTACAO_EXCEL = [
    "Origem (CGOF)",
    "Entrada",
    "Número",
    "Interessada",
    "Assunto",
    "Localização",
    "saida",
    "Urgente",
    "Retorno",
    "Status",
]
COLUNAS_EXPORTACAO_PDF = ["Origem", "Entrada", "Número", "Interessada", "Localização", "Saída", "Retorno"]
TITULO_RELATORIO_PDF = "Fluxo de Processos - Relatório Geral"
MIMETYPE_EXCEL = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


# === Utilitarios de normalizacao ===
def normalizar_chave(valor: str) -> str:
    """Remove acentos e normaliza texto para comparacoes consistentes."""
    return (
        unicodedata.normalize("NFKD", str(valor))
        .encode("ascii", "ignore")
        .decode("ascii")
        .upper()
        .strip()
        .replace("  ", " ")
    )


def normalizar_coluna_importacao(valor: str) -> str:
    """Normaliza cabecalhos de planilha para mapeamento de importacao."""
    base = normalizar_chave(valor)
    return re.sub(r"[^A-Z0-9]+", " ", base).strip()


def limpar_texto(valor, default: str = "") -> str:
    """Retorna string limpa ou valor padrao quando entrada estiver vazia."""
    if valor is None:
        return default
    try:
        if pd.isna(valor):
            return default
    except (TypeError, ValueError):
        pass
    if isinstance(valor, float) and valor.is_integer():
        valor = int(valor)
    texto = str(valor).strip()
    return default if texto.upper() in {"", "NAN", "NAT"} else texto


def localizar_coluna(colunas: Iterable[str], sinonimos: Iterable[str]) -> Optional[str]:
    """Retorna a primeira coluna da planilha que corresponde a um dos sinonimos."""
    aceitos = {normalizar_coluna_importacao(nome) for nome in sinonimos}
    for coluna in colunas:
        if normalizar_coluna_importacao(coluna) in aceitos:
            return coluna
    return None


def mapear_colunas(colunas: Iterable[str]) -> Dict[str, str]:
    """Associa cada campo do registro a uma coluna encontrada na planilha."""
    colunas = [str(col) for col in colunas]
    mapa: Dict[str, str] = {}
    for campo, sinonimos in SINONIMOS_COLUNAS.items():
        coluna = localizar_coluna(colunas, sinonimos)
        if coluna is not None:
            mapa[campo] = coluna
    return mapa


# === Datas vindas da planilha ===
def _data_serial(numero: float) -> Optional[datetime]:
    if numero <= 0 or numero > MAIOR_SERIAL_PLANILHA:
        return None
    return EPOCA_SERIAL_PLANILHA + timedelta(days=float(numero))


def parse_data_planilha(valor) -> Optional[datetime]:
    """Converte celulas de data (serial, DD/MM/AAAA, ISO ou datetime) para 12:00 locais."""
    if valor is None or isinstance(valor, bool):
        return None
    try:
        if pd.isna(valor):
            return None
    except (TypeError, ValueError):
        pass

    bruto = None
    if isinstance(valor, (datetime, date)):
        bruto = valor
    elif isinstance(valor, numbers.Number):
        bruto = _data_serial(valor)
    else:
        texto = str(valor).strip()
        if re.fullmatch(r"\d+(\.\d+)?", texto):
            bruto = _data_serial(float(texto))
        elif "/" in texto:
            partes = texto.split("/")
            if len(partes) == 3:
                dia, mes, ano = (parte.strip() for parte in partes)
                try:
                    ano_num = int(ano)
                    if ano_num < 100:
                        ano_num += 2000
                    bruto = date(ano_num, int(mes), int(dia))
                except ValueError:
                    bruto = None
        else:
            bruto = parse_instante(texto)
    return para_meio_dia_local(bruto) if bruto is not None else None


# === Importacao ===
def _excel_engine_para(nome_arquivo: str) -> Optional[str]:
    """Define o engine do pandas para leitura de Excel pelo sufixo do arquivo."""
    ext = os.path.splitext(str(nome_arquivo or ""))[1].lower()
    if ext in EXTENSOES_PLANILHA:
        return "openpyxl"
    return None


def validar_extensao_planilha(nome_arquivo: str) -> Optional[str]:
    """Retorna mensagem de erro caso o tipo de arquivo nao seja suportado."""
    ext = os.path.splitext(str(nome_arquivo or ""))[1].lower()
    if ext not in EXTENSOES_PLANILHA:
        return "Formato nao suportado. Salve a planilha como .xlsx."
    return None


def mensagem_erro_excel(exc: Exception) -> str:
    """Converte erros comuns de leitura do Excel em mensagens amigaveis."""
    mensagem = (str(exc) or exc.__class__.__name__).lower()
    if "excel file format cannot be determined" in mensagem:
        return "Formato da planilha nao foi reconhecido. Salve como .xlsx."
    if "file is not a zip file" in mensagem or "badzipfile" in mensagem:
        return "Arquivo nao parece um .xlsx valido. Salve novamente como .xlsx."
    return "Nao foi possivel ler o arquivo Excel informado."


def ler_planilha(arquivo, nome_arquivo: str = "") -> List[Dict[str, object]]:
    """Le a primeira aba da planilha e devolve uma lista de linhas (dict por coluna)."""
    engine = _excel_engine_para(nome_arquivo or getattr(arquivo, "filename", "") or "")
    kwargs = {"engine": engine} if engine else {}
    df = pd.read_excel(arquivo, sheet_name=0, **kwargs)
    df.columns = [str(col) for col in df.columns]
    df = df.dropna(how="all")
    return df.to_dict(orient="records")


def linhas_para_registros(
    linhas: Iterable[Mapping[str, object]],
    usuario_id: str,
    agora: Optional[datetime] = None,
) -> List[RegistroMovimentacao]:
    """Monta os registros a importar a partir das linhas lidas da planilha."""
    linhas = list(linhas)
    if not linhas:
        return []
    agora = agora or datetime.utcnow()
    colunas: List[str] = []
    for linha in linhas:
        for coluna in linha.keys():
            if coluna not in colunas:
                colunas.append(coluna)
    mapa = mapear_colunas(colunas)

    def obter(linha, campo):
        coluna = mapa.get(campo)
        return linha.get(coluna) if coluna else None

    registros: List[RegistroMovimentacao] = []
    for linha in linhas:
        # Somente a data de entrada e obrigatoria; sem ela vale o momento da importacao.
        data_entrada = parse_data_planilha(obter(linha, "data_entrada")) or agora
        registros.append(
            RegistroMovimentacao(
                numero=limpar_texto(obter(linha, "numero"), NUMERO_SEM_IDENTIFICACAO),
                categoria=CATEGORIA_PADRAO,
                origem=normalizar_origem(limpar_texto(obter(linha, "origem"), ORIGEM_ASSESSORIA)),
                setor=limpar_texto(obter(linha, "setor")),
                interessado=limpar_texto(obter(linha, "interessado")),
                assunto=limpar_texto(obter(linha, "assunto")),
                observacoes=limpar_texto(obter(linha, "observacoes")),
                data_entrada=data_entrada,
                data_saida=parse_data_planilha(obter(linha, "data_saida")),
                prazo=parse_data_planilha(obter(linha, "prazo")),
                urgente=limpar_texto(obter(linha, "urgente")).lower().startswith("s"),
                criado_em=agora,
                atualizado_em=agora,
                criado_por=usuario_id,
                atualizado_por=usuario_id,
            )
        )
    logger.info("Planilha convertida em %s registro(s); colunas mapeadas: %s", len(registros), mapa)
    return registros


# === Exportacao ===
def linhas_exportacao_excel(atuais: Iterable[RegistroMovimentacao], hoje: date) -> List[List[str]]:
    linhas = []
    for registro in atuais:
        linhas.append(
            [
                registro.origem,
                formatar_data_br(registro.data_entrada),
                registro.numero,
                registro.interessado,
                registro.assunto,
                registro.setor,
                formatar_data_br(registro.data_saida),
                "Sim" if registro.urgente else "Não",
                formatar_data_br(registro.prazo),
                classificar_prazo(registro.prazo, hoje) if registro.prazo else "-",
            ]
        )
    return linhas


def exportar_excel(atuais: Iterable[RegistroMovimentacao], hoje: date) -> bytes:
    """Gera a planilha do estado atual dos processos."""
    df = pd.DataFrame(linhas_exportacao_excel(atuais, hoje), columns=COLUNAS_EXPORTACAO_EXCEL)
    buffer = BytesIO()
    with pd.ExcelWriter(buffer, engine="openpyxl") as writer:
        df.to_excel(writer, sheet_name="Processos", index=False)
    return buffer.getvalue()


def nome_arquivo_excel(hoje: date) -> str:
    return f"Fluxo_Processos_{hoje:%Y-%m-%d}.xlsx"


def nome_arquivo_pdf() -> str:
    return "Relatorio_Processos_Fluxo.pdf"


def exportar_pdf(atuais: Iterable[RegistroMovimentacao]) -> bytes:
    """Gera o relatorio geral em PDF com as colunas fixas do fluxo."""
    estilos = getSampleStyleSheet()
    celula = estilos["BodyText"].clone("celula", fontSize=6.5, leading=8)

    corpo = [[Paragraph(titulo, celula) for titulo in COLUNAS_EXPORTACAO_PDF]]
    for registro in atuais:
        valores = [
            registro.origem or "-",
            formatar_data_br(registro.data_entrada),
            registro.numero,
            registro.interessado,
            registro.setor,
            formatar_data_br(registro.data_saida),
            formatar_data_br(registro.prazo),
        ]
        corpo.append([Paragraph(_escapar(valor), celula) for valor in valores])

    tabela = Table(
        corpo,
        repeatRows=1,
        colWidths=[35 * mm, 22 * mm, 45 * mm, 70 * mm, 50 * mm, 22 * mm, 22 * mm],
    )
    tabela.setStyle(
        TableStyle(
            [
                ("BACKGROUND", (0, 0), (-1, 0), colors.HexColor("#1e40af")),
                ("TEXTCOLOR", (0, 0), (-1, 0), colors.white),
                ("GRID", (0, 0), (-1, -1), 0.25, colors.HexColor("#cbd5e1")),
                ("VALIGN", (0, 0), (-1, -1), "TOP"),
            ]
        )
    )

    buffer = BytesIO()
    documento = SimpleDocTemplate(
        buffer,
        pagesize=landscape(A4),
        leftMargin=10 * mm,
        rightMargin=10 * mm,
        topMargin=12 * mm,
        bottomMargin=12 * mm,
        title=TITULO_RELATORIO_PDF,
    )
    documento.build([Paragraph(TITULO_RELATORIO_PDF, estilos["Title"]), Spacer(1, 4 * mm), tabela])
    return buffer.getvalue()


def _escapar(valor) -> str:
    texto = "" if valor is None else str(valor)
    return texto.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")
