"""Arquivo: app.py | Objetivo: Aplicacao Flask do fluxo de processos (historico, painel, importacao/exportacao e auditoria)."""
"""
Aplicacao Flask que expoe o historico de movimentacoes de processos.

- Configuracoes e constantes de ambiente
- Models SQLAlchemy (Usuario, Processo, LogAuditoria)
- Acesso ao historico (consulta, gravacao, exclusao e importacao em lotes)
- Autenticacao, usuarios e trilha de auditoria
- Rotas JSON (painel, listagem, exportacao) e bootstrap do app/banco
"""

import os
import uuid
from datetime import datetime, time, timedelta
from functools import wraps
from io import BytesIO
from typing import Dict, List, Optional, Sequence, Tuple

import click
from flask import Flask, jsonify, request, send_file, session
from flask_login import (
    LoginManager,
    UserMixin,
    current_user,
    login_required,
    login_user,
    logout_user,
)
from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.exceptions import HTTPException
from werkzeug.security import check_password_hash, generate_password_hash

from erros import ErroAutenticacao, ErroConflito, ErroFluxo, ErroTransporte, ErroValidacao
from fluxo import (
    CAMPOS_ORDENACAO,
    ITENS_POR_PAGINA_OPCOES,
    ORIGENS_CGOF,
    EstadoFiltros,
    RegistroMovimentacao,
    agregar_painel,
    hoje_local,
    importar_em_lotes,
    janela_paginas,
    listar_estado_atual,
    montar_consulta,
    normalizar_origem,
    normalizar_registro,
    para_meio_dia_local,
    parse_dia,
    total_paginas,
)
from planilhas import (
    MIMETYPE_EXCEL,
    exportar_excel,
    exportar_pdf,
    ler_planilha,
    linhas_para_registros,
    mensagem_erro_excel,
    nome_arquivo_excel,
    nome_arquivo_pdf,
    validar_extensao_planilha,
)

# === Caminhos e constantes basicas ===
# Caminho base do projeto e local do banco SQLite
BASE_DIR = os.path.abspath(os.path.dirname(__file__))
DB_PATH = os.path.join(BASE_DIR, "fluxo_processos.db")


def _env_int(nome: str, padrao: int) -> int:
    """Le inteiro de variavel de ambiente com fallback seguro."""
    valor = os.environ.get(nome)
    if valor is None:
        return padrao
    try:
        return int(str(valor).strip())
    except (TypeError, ValueError):
        return padrao


def _env_bool(nome: str, padrao: bool) -> bool:
    valor = os.environ.get(nome)
    if valor is None:
        return padrao
    return valor.strip().lower() in {"1", "true", "on", "yes"}


APP_TZ = os.environ.get("APP_TZ", "America/Sao_Paulo").strip() or "America/Sao_Paulo"
IMPORT_BATCH_SIZE = max(1, _env_int("IMPORT_BATCH_SIZE", 100))
DASHBOARD_MAX_ROWS = max(1, _env_int("DASHBOARD_MAX_ROWS", 10000))
MAX_IMPORT_FILE_SIZE_MB = max(1, _env_int("MAX_IMPORT_FILE_SIZE_MB", 20))
SEARCH_DEBOUNCE_MS = max(0, _env_int("SEARCH_DEBOUNCE_MS", 500))
RESET_DATABASE_ON_START = _env_bool("RESET_DATABASE_ON_START", False)

LIMITE_LOGS = 100
TAMANHO_MINIMO_SENHA = 6
CHAVE_SESSAO_FILTROS = "filtros_processos"
PERFIL_ADMIN = "admin"
PERFIL_USUARIO = "usuario"
PERFIS = {PERFIL_ADMIN, PERFIL_USUARIO}

ACAO_CREATE = "CREATE"
ACAO_UPDATE = "UPDATE"
ACAO_DELETE = "DELETE"
ACAO_IMPORT = "IMPORT"
ACAO_LOGIN = "LOGIN"
ACAO_LOGOUT = "LOGOUT"
ACAO_USER_MGMT = "USER_MGMT"

# Campos liberados para atualizacao em massa
CAMPOS_EDICAO_LOTE = {"origem", "setor", "urgente", "prazo", "data_saida"}
# Campos com lista de sugestoes (valores distintos ja cadastrados)
CAMPOS_SUGESTAO = {"setor", "interessado", "assunto"}

# === Setup Flask, banco e autenticacao ===
app = Flask(__name__)
database_url = os.environ.get("DATABASE_URL", "").strip()
# Render/Postgres pode fornecer URL com esquema `postgres://`, normaliza para SQLAlchemy.
if database_url.startswith("postgres://"):
    database_url = database_url.replace("postgres://", "postgresql://", 1)

app.config.update(
    SECRET_KEY=os.environ.get("SECRET_KEY", "troque-esta-chave"),
    SQLALCHEMY_DATABASE_URI=database_url or f"sqlite:///{DB_PATH}",
    SQLALCHEMY_TRACK_MODIFICATIONS=False,
    SQLALCHEMY_ENGINE_OPTIONS={
        "pool_pre_ping": True,
    },
    MAX_CONTENT_LENGTH=MAX_IMPORT_FILE_SIZE_MB * 1024 * 1024,
)
app.permanent_session_lifetime = timedelta(hours=4)

db = SQLAlchemy(app)
login_manager = LoginManager(app)


def _novo_id() -> str:
    return str(uuid.uuid4())


# === Models ===
class Usuario(UserMixin, db.Model):
    """Usuario autenticado que opera o fluxo."""

    __tablename__ = "usuarios"

    id = db.Column(db.String(36), primary_key=True, default=_novo_id)
    nome = db.Column(db.String(120), nullable=False)
    email = db.Column(db.String(255), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    perfil = db.Column(db.String(20), nullable=False, default=PERFIL_USUARIO)
    ativo = db.Column(db.Boolean, default=True)
    criado_em = db.Column(db.DateTime, default=datetime.utcnow)

    def set_password(self, password: str) -> None:
        """Armazena o hash da senha informada."""
        self.password_hash = generate_password_hash(password)

    def check_password(self, password: str) -> bool:
        """Confere se a senha informada coincide com o hash salvo."""
        return check_password_hash(self.password_hash, password or "")

    @property
    def is_admin(self) -> bool:
        return self.perfil == PERFIL_ADMIN

    @property
    def is_active(self) -> bool:
        return bool(self.ativo)

    def para_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "nome": self.nome,
            "email": self.email,
            "perfil": self.perfil,
            "ativo": bool(self.ativo),
            "criado_em": self.criado_em.isoformat() if self.criado_em else None,
        }


class Processo(db.Model):
    """Uma movimentacao do processo; o historico e a sequencia dessas linhas."""

    __tablename__ = "processos"

    id = db.Column(db.String(36), primary_key=True, default=_novo_id)
    numero = db.Column(db.String(120), nullable=False, index=True)
    setor = db.Column(db.String(255))
    origem = db.Column(db.String(60))
    interessado = db.Column(db.String(255))
    assunto = db.Column(db.Text)
    observacoes = db.Column(db.Text)
    categoria = db.Column(db.String(60))
    data_entrada = db.Column(db.DateTime, nullable=False, index=True)
    data_saida = db.Column(db.DateTime)
    prazo = db.Column(db.DateTime)
    urgente = db.Column(db.Boolean, default=False)
    criado_em = db.Column(db.DateTime, default=datetime.utcnow)
    atualizado_em = db.Column(db.DateTime, default=datetime.utcnow)
    criado_por = db.Column(db.String(36))
    atualizado_por = db.Column(db.String(36))

    def __repr__(self) -> str:
        return f"<Processo {self.numero} {self.data_entrada}>"

    def para_registro(self) -> RegistroMovimentacao:
        """Converte a linha do banco no registro normalizado do nucleo."""
        return RegistroMovimentacao(
            id=self.id,
            numero=self.numero or "",
            setor=self.setor or "",
            origem=self.origem or "",
            interessado=self.interessado or "",
            assunto=self.assunto or "",
            observacoes=self.observacoes or "",
            categoria=self.categoria or "",
            data_entrada=self.data_entrada,
            data_saida=self.data_saida,
            prazo=self.prazo,
            urgente=bool(self.urgente),
            criado_em=self.criado_em,
            atualizado_em=self.atualizado_em,
            criado_por=self.criado_por or "",
            atualizado_por=self.atualizado_por or "",
        )

    @classmethod
    def de_registro(cls, registro: RegistroMovimentacao) -> "Processo":
        processo = cls(id=registro.id)
        processo.aplicar_registro(registro)
        processo.criado_em = registro.criado_em or datetime.utcnow()
        processo.criado_por = registro.criado_por or None
        return processo

    def aplicar_registro(self, registro: RegistroMovimentacao) -> None:
        """Copia os campos editaveis; criado_em/criado_por ficam de fora."""
        self.numero = registro.numero
        self.setor = registro.setor
        self.origem = registro.origem
        self.interessado = registro.interessado
        self.assunto = registro.assunto
        self.observacoes = registro.observacoes
        self.categoria = registro.categoria
        self.data_entrada = registro.data_entrada
        self.data_saida = registro.data_saida
        self.prazo = registro.prazo
        self.urgente = bool(registro.urgente)
        self.atualizado_em = registro.atualizado_em or datetime.utcnow()
        self.atualizado_por = registro.atualizado_por or None


class LogAuditoria(db.Model):
    """Entrada imutavel da trilha de auditoria."""

    __tablename__ = "logs"

    id = db.Column(db.String(36), primary_key=True, default=_novo_id)
    acao = db.Column(db.String(20), nullable=False, index=True)
    descricao = db.Column(db.Text, nullable=False)
    usuario_id = db.Column(db.String(36))
    usuario_nome = db.Column(db.String(120))
    momento = db.Column(db.DateTime, default=datetime.utcnow, index=True)
    alvo_id = db.Column(db.String(36))

    def para_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "acao": self.acao,
            "descricao": self.descricao,
            "usuario_id": self.usuario_id,
            "usuario_nome": self.usuario_nome,
            "momento": self.momento.isoformat() if self.momento else None,
            "alvo_id": self.alvo_id,
        }


@login_manager.user_loader
def load_user(user_id: str) -> Optional[Usuario]:
    if not user_id:
        return None
    return db.session.get(Usuario, str(user_id))


@login_manager.unauthorized_handler
def nao_autenticado():
    return jsonify({"ok": False, "erro": "Login obrigatorio."}), 401


# === Erros e permissao ===
@app.errorhandler(ErroFluxo)
def tratar_erro_fluxo(exc: ErroFluxo):
    """Toda falha de negocio chega ao cliente com mensagem explicita."""
    return jsonify({"ok": False, "erro": exc.mensagem}), exc.status_http


@app.errorhandler(HTTPException)
def tratar_erro_http(exc: HTTPException):
    if exc.code is not None and exc.code < 400:
        return exc
    return jsonify({"ok": False, "erro": exc.description or exc.name}), exc.code or 500


def admin_obrigatorio(fn):
    """Restringe a rota a usuarios com perfil admin."""

    @wraps(fn)
    def wrapper(*args, **kwargs):
        if not current_user.is_authenticated:
            return login_manager.unauthorized()
        if not current_user.is_admin:
            return jsonify({"ok": False, "erro": "Acesso restrito a administradores."}), 403
        return fn(*args, **kwargs)

    return wrapper


def _confirmar(mensagem: str = "Falha ao salvar no banco de dados.") -> None:
    """Confirma a sessao; falha de banco vira ErroTransporte apos rollback."""
    try:
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        app.logger.exception("Erro ao confirmar transacao: %s", exc)
        raise ErroTransporte(mensagem) from exc


# === Trilha de auditoria ===
def registrar_log(
    acao: str,
    descricao: str,
    usuario: Optional[Usuario],
    alvo_id: Optional[str] = None,
) -> LogAuditoria:
    """Adiciona uma entrada de log; o commit fica com o fluxo chamador."""
    entrada = LogAuditoria(
        acao=acao,
        descricao=descricao,
        usuario_id=getattr(usuario, "id", None),
        usuario_nome=getattr(usuario, "nome", None) or "Sistema",
        momento=datetime.utcnow(),
        alvo_id=alvo_id,
    )
    db.session.add(entrada)
    return entrada


def listar_logs(limite: int = LIMITE_LOGS) -> List[LogAuditoria]:
    """Entradas mais recentes primeiro."""
    try:
        return LogAuditoria.query.order_by(LogAuditoria.momento.desc()).limit(limite).all()
    except SQLAlchemyError as exc:
        app.logger.exception("Erro ao listar logs: %s", exc)
        raise ErroTransporte("Nao foi possivel carregar os logs.") from exc


# === Consulta ao historico ===
def _inicio_do_dia(dia) -> datetime:
    return datetime.combine(dia, time.min)


def _filtrar_historico(consulta, descritor: Dict[str, object]):
    """Aplica termo de busca e filtros do descritor montado pela tela."""
    termo = (descritor.get("termo_busca") or "").strip()
    if termo:
        like = f"%{termo}%"
        consulta = consulta.filter(
            or_(
                Processo.numero.ilike(like),
                Processo.interessado.ilike(like),
                Processo.assunto.ilike(like),
            )
        )

    filtros = descritor.get("filtros") or {}
    if filtros.get("origem"):
        consulta = consulta.filter(Processo.origem == filtros["origem"])
    if filtros.get("setor"):
        consulta = consulta.filter(Processo.setor.ilike(f"%{filtros['setor']}%"))

    inicio = parse_dia(filtros.get("data_entrada_inicio"))
    if inicio:
        consulta = consulta.filter(Processo.data_entrada >= _inicio_do_dia(inicio))
    fim = parse_dia(filtros.get("data_entrada_fim"))
    if fim:
        # Dia final inteiro (entradas gravadas as 12:00 inclusive).
        consulta = consulta.filter(Processo.data_entrada < _inicio_do_dia(fim + timedelta(days=1)))

    if filtros.get("urgente"):
        consulta = consulta.filter(Processo.urgente.is_(True))
    if filtros.get("vencido"):
        consulta = consulta.filter(Processo.prazo < _inicio_do_dia(hoje_local(APP_TZ)))
    if filtros.get("setor_vazio"):
        consulta = consulta.filter(or_(Processo.setor.is_(None), Processo.setor == ""))
    if filtros.get("saida_vazia"):
        consulta = consulta.filter(Processo.data_saida.is_(None))
    return consulta


def consultar_historico(descritor: Dict[str, object]) -> Tuple[List[RegistroMovimentacao], int]:
    """Executa o descritor da listagem e devolve a pagina pedida e o total filtrado."""
    ordenacao = descritor.get("ordenacao") or {}
    campo = ordenacao.get("campo") if ordenacao.get("campo") in CAMPOS_ORDENACAO else "data_entrada"
    coluna = getattr(Processo, campo)
    ordem = coluna.desc() if ordenacao.get("ordem") == "desc" else coluna.asc()

    try:
        consulta = _filtrar_historico(Processo.query, descritor)
        paginacao = consulta.order_by(ordem, Processo.id.asc()).paginate(
            page=int(descritor.get("pagina") or 1),
            per_page=int(descritor.get("itens_por_pagina") or 20),
            error_out=False,
        )
    except SQLAlchemyError as exc:
        db.session.rollback()
        app.logger.exception("Erro ao consultar historico: %s", exc)
        raise ErroTransporte("Nao foi possivel consultar os processos.") from exc
    return [processo.para_registro() for processo in paginacao.items], paginacao.total or 0


def carregar_historico_painel() -> Tuple[List[RegistroMovimentacao], int]:
    """Linhas usadas pelo painel (limitadas) e o total real do historico."""
    try:
        linhas = (
            Processo.query.order_by(Processo.data_entrada.desc())
            .limit(DASHBOARD_MAX_ROWS)
            .all()
        )
        total = Processo.query.count()
    except SQLAlchemyError as exc:
        db.session.rollback()
        app.logger.exception("Erro ao carregar historico do painel: %s", exc)
        raise ErroTransporte("Nao foi possivel carregar o painel.") from exc
    if total > len(linhas):
        app.logger.warning(
            "Painel calculado sobre %s de %s movimentacoes (DASHBOARD_MAX_ROWS).",
            len(linhas),
            total,
        )
    return [processo.para_registro() for processo in linhas], total


def historico_do_numero(numero: str) -> List[RegistroMovimentacao]:
    """Movimentacoes de um numero, da mais antiga para a mais recente."""
    numero = (numero or "").strip()
    if not numero:
        return []
    linhas = (
        Processo.query.filter(Processo.numero == numero)
        .order_by(Processo.data_entrada.asc(), Processo.criado_em.asc())
        .all()
    )
    return [processo.para_registro() for processo in linhas]


def ultima_movimentacao(numero: str) -> Optional[Processo]:
    numero = (numero or "").strip()
    if not numero:
        return None
    return (
        Processo.query.filter(Processo.numero == numero)
        .order_by(Processo.data_entrada.desc(), Processo.criado_em.desc())
        .first()
    )


def valores_distintos(campo: str) -> List[str]:
    """Valores ja usados em setor/interessado/assunto, para sugestao nos formularios."""
    if campo not in CAMPOS_SUGESTAO:
        raise ErroValidacao(f"Campo sem sugestoes: {campo}.")
    coluna = getattr(Processo, campo)
    valores = db.session.query(coluna).filter(coluna.isnot(None), coluna != "").distinct().all()
    return sorted({str(valor).strip() for (valor,) in valores if str(valor).strip()})


# === Gravacao no historico ===
def _preparar_registro(dados: Dict[str, object]) -> RegistroMovimentacao:
    registro = normalizar_registro(dados)
    registro.numero = registro.numero or "S/N"
    registro.origem = normalizar_origem(registro.origem)
    registro.data_entrada = para_meio_dia_local(registro.data_entrada)
    registro.data_saida = para_meio_dia_local(registro.data_saida)
    registro.prazo = para_meio_dia_local(registro.prazo)
    if registro.data_entrada is None:
        raise ErroValidacao("Data de entrada obrigatoria.")
    return registro


def salvar_processo(dados: Dict[str, object], usuario: Usuario) -> Processo:
    """Grava a movimentacao (upsert pelo id) preservando criado_em/criado_por."""
    registro = _preparar_registro(dados)
    agora = datetime.utcnow()
    registro.atualizado_em = agora
    registro.atualizado_por = usuario.id

    existente = db.session.get(Processo, registro.id) if dados.get("id") else None
    if existente is not None:
        existente.aplicar_registro(registro)
        processo = existente
        registrar_log(ACAO_UPDATE, f"Processo {processo.numero} atualizado.", usuario, processo.id)
    else:
        registro.criado_em = agora
        registro.criado_por = usuario.id
        processo = Processo.de_registro(registro)
        db.session.add(processo)
        registrar_log(ACAO_CREATE, f"Processo {processo.numero} cadastrado.", usuario, processo.id)
    _confirmar("Falha ao salvar o processo.")
    app.logger.info("Processo %s salvo por %s.", processo.numero, usuario.email)
    return processo


def atualizar_processos(ids: Sequence[str], alteracoes: Dict[str, object], usuario: Usuario) -> int:
    """Aplica as mesmas alteracoes a varias movimentacoes de uma vez."""
    ids = [str(i) for i in ids or [] if i]
    if not ids:
        raise ErroValidacao("Selecione ao menos um processo.")
    valores: Dict[str, object] = {}
    for campo, valor in (alteracoes or {}).items():
        if campo not in CAMPOS_EDICAO_LOTE:
            raise ErroValidacao(f"Campo nao pode ser alterado em lote: {campo}.")
        if campo == "origem":
            valores[campo] = normalizar_origem(valor)
        elif campo == "urgente":
            valores[campo] = normalizar_registro({"urgente": valor}).urgente
        elif campo in {"prazo", "data_saida"}:
            valores[campo] = para_meio_dia_local(valor)
        else:
            valores[campo] = (str(valor).strip() if valor is not None else "")
    if not valores:
        raise ErroValidacao("Nenhuma alteracao informada.")

    processos = Processo.query.filter(Processo.id.in_(ids)).all()
    agora = datetime.utcnow()
    for processo in processos:
        for campo, valor in valores.items():
            setattr(processo, campo, valor)
        processo.atualizado_em = agora
        processo.atualizado_por = usuario.id
    registrar_log(
        ACAO_UPDATE,
        f"Atualizacao em lote de {len(processos)} processo(s): {', '.join(sorted(valores))}.",
        usuario,
    )
    _confirmar("Falha ao atualizar os processos.")
    return len(processos)


def excluir_processo(processo_id: str, usuario: Usuario) -> None:
    """Remove uma unica movimentacao; as demais do mesmo numero permanecem."""
    processo = db.session.get(Processo, processo_id)
    if processo is None:
        raise ErroValidacao("Processo nao encontrado.")
    numero = processo.numero
    db.session.delete(processo)
    registrar_log(ACAO_DELETE, f"Movimentacao do processo {numero} excluida.", usuario, processo_id)
    _confirmar("Falha ao excluir o processo.")


def excluir_processos(ids: Sequence[str], usuario: Usuario) -> int:
    ids = [str(i) for i in ids or [] if i]
    if not ids:
        raise ErroValidacao("Selecione ao menos um processo.")
    removidos = Processo.query.filter(Processo.id.in_(ids)).delete(synchronize_session=False)
    registrar_log(ACAO_DELETE, f"Exclusao em lote de {removidos} movimentacao(oes).", usuario)
    _confirmar("Falha ao excluir os processos.")
    return removidos


def excluir_ultima_movimentacao(numero: str, usuario: Usuario, senha: str) -> RegistroMovimentacao:
    """Desfaz a movimentacao mais recente do numero apos confirmar a senha."""
    if not usuario.check_password(senha):
        raise ErroAutenticacao("Senha incorreta. Exclusao nao realizada.")
    ultima = ultima_movimentacao(numero)
    if ultima is None:
        raise ErroValidacao("Nenhuma movimentacao encontrada para este processo.")
    registro = ultima.para_registro()
    db.session.delete(ultima)
    registrar_log(
        ACAO_DELETE,
        f"Ultima movimentacao do processo {registro.numero} excluida.",
        usuario,
        registro.id,
    )
    _confirmar("Falha ao excluir a movimentacao.")
    return registro


def importar_registros(
    registros: Sequence[RegistroMovimentacao],
    usuario: Usuario,
    tamanho_lote: Optional[int] = None,
) -> int:
    """Grava os registros da planilha em lotes; lotes confirmados nao sao desfeitos."""
    importados = 0

    def _commit_lote_importacao(lote: List[RegistroMovimentacao]) -> None:
        """Confirma o lote atual de importacao no banco."""
        nonlocal importados
        for registro in lote:
            db.session.add(Processo.de_registro(registro))
        _confirmar("Falha ao salvar lote da importacao.")
        importados += len(lote)

    try:
        lotes = importar_em_lotes(registros, _commit_lote_importacao, tamanho_lote or IMPORT_BATCH_SIZE)
    except ErroTransporte as exc:
        raise ErroTransporte(
            f"Importacao interrompida: {importados} registro(s) ja gravado(s); "
            "os lotes seguintes nao foram enviados."
        ) from exc

    registrar_log(
        ACAO_IMPORT,
        f"Importacao de {importados} registro(s) em {lotes} lote(s).",
        usuario,
    )
    _confirmar("Falha ao registrar a importacao.")
    app.logger.info("Importacao concluida: %s registro(s) em %s lote(s).", importados, lotes)
    return importados


# === Usuarios e autenticacao ===
def buscar_usuario_por_email(email: str) -> Optional[Usuario]:
    email = (email or "").strip().lower()
    if not email:
        return None
    return Usuario.query.filter(Usuario.email == email).first()


def autenticar(email: str, senha: str) -> Usuario:
    usuario = buscar_usuario_por_email(email)
    if usuario is None or not usuario.ativo or not usuario.check_password(senha):
        raise ErroAutenticacao("Email ou senha invalidos.")
    return usuario


def _validar_senha(senha: str) -> None:
    if len(senha or "") < TAMANHO_MINIMO_SENHA:
        raise ErroValidacao(f"A senha deve ter pelo menos {TAMANHO_MINIMO_SENHA} caracteres.")


def salvar_usuario(dados: Dict[str, object], autor: Usuario) -> Usuario:
    """Cria ou atualiza usuario; email e unico e senha e obrigatoria no cadastro."""
    nome = str(dados.get("nome") or "").strip()
    email = str(dados.get("email") or "").strip().lower()
    senha = str(dados.get("senha") or "")
    perfil = str(dados.get("perfil") or PERFIL_USUARIO).strip().lower()
    if not nome or not email:
        raise ErroValidacao("Nome e email sao obrigatorios.")
    if perfil not in PERFIS:
        raise ErroValidacao("Perfil invalido.")

    usuario_id = dados.get("id")
    usuario = db.session.get(Usuario, str(usuario_id)) if usuario_id else None
    if usuario_id and usuario is None:
        raise ErroValidacao("Usuario nao encontrado.")

    duplicado = buscar_usuario_por_email(email)
    if duplicado is not None and (usuario is None or duplicado.id != usuario.id):
        raise ErroConflito("Ja existe um usuario com este email.")

    if usuario is None:
        if not senha:
            raise ErroValidacao("Senha obrigatoria para novo usuario.")
        _validar_senha(senha)
        usuario = Usuario(nome=nome, email=email, perfil=perfil, ativo=True)
        usuario.set_password(senha)
        db.session.add(usuario)
        descricao = f"Usuario {email} criado."
    else:
        usuario.nome = nome
        usuario.email = email
        usuario.perfil = perfil
        if "ativo" in dados:
            usuario.ativo = bool(dados.get("ativo"))
        if senha:
            _validar_senha(senha)
            usuario.set_password(senha)
        descricao = f"Usuario {email} atualizado."
    db.session.flush()
    registrar_log(ACAO_USER_MGMT, descricao, autor, usuario.id)
    _confirmar("Falha ao salvar o usuario.")
    return usuario


def excluir_usuario(usuario_id: str, autor: Usuario) -> None:
    if usuario_id == autor.id:
        raise ErroValidacao("Voce nao pode excluir o proprio usuario.")
    usuario = db.session.get(Usuario, usuario_id)
    if usuario is None:
        raise ErroValidacao("Usuario nao encontrado.")
    email = usuario.email
    db.session.delete(usuario)
    registrar_log(ACAO_USER_MGMT, f"Usuario {email} excluido.", autor, usuario_id)
    _confirmar("Falha ao excluir o usuario.")


def alterar_propria_senha(usuario: Usuario, atual: str, nova: str) -> None:
    if not usuario.check_password(atual):
        raise ErroAutenticacao("Senha atual incorreta.")
    _validar_senha(nova)
    usuario.set_password(nova)
    registrar_log(ACAO_USER_MGMT, "Senha propria alterada.", usuario, usuario.id)
    _confirmar("Falha ao alterar a senha.")


def criar_administrador_inicial(nome: str, email: str, senha: str) -> Usuario:
    """Cadastro explicito do primeiro admin (comando `flask criar-admin`)."""
    email = (email or "").strip().lower()
    if buscar_usuario_por_email(email) is not None:
        raise ErroConflito(f"Ja existe um usuario com o email {email}.")
    if not (nome or "").strip() or not email:
        raise ErroValidacao("Nome e email sao obrigatorios.")
    _validar_senha(senha)
    usuario = Usuario(nome=nome.strip(), email=email, perfil=PERFIL_ADMIN, ativo=True)
    usuario.set_password(senha)
    db.session.add(usuario)
    db.session.flush()
    registrar_log(ACAO_USER_MGMT, f"Administrador inicial {email} criado.", None, usuario.id)
    _confirmar("Falha ao criar o administrador.")
    return usuario


# === Preferencias de filtro ===
def carregar_filtros_sessao() -> EstadoFiltros:
    return EstadoFiltros.de_dict(session.get(CHAVE_SESSAO_FILTROS))


def salvar_filtros_sessao(estado: EstadoFiltros) -> None:
    session[CHAVE_SESSAO_FILTROS] = estado.para_dict()


def _dados_json() -> Dict[str, object]:
    dados = request.get_json(silent=True)
    return dados if isinstance(dados, dict) else {}


def _estado_da_requisicao() -> EstadoFiltros:
    """Filtros da query string sobre os salvos na sessao (pagina volta a 1 ao mudar filtro)."""
    base = carregar_filtros_sessao()
    alteracoes = {chave: valor for chave, valor in request.args.items() if chave != "seq"}
    return base.com_alteracoes(alteracoes) if alteracoes else base


# === Autenticacao e perfil ===
@app.route("/login", methods=["POST"])
def login():
    """Autentica por email e senha."""
    dados = _dados_json() or request.form.to_dict()
    usuario = autenticar(dados.get("email") or "", dados.get("senha") or "")
    login_user(usuario, remember=bool(dados.get("lembrar")))
    session.permanent = True
    registrar_log(ACAO_LOGIN, f"Login de {usuario.email}.", usuario, usuario.id)
    _confirmar("Falha ao registrar o login.")
    return jsonify({"ok": True, "usuario": usuario.para_dict()})


@app.route("/logout", methods=["POST"])
@login_required
def logout():
    """Finaliza a sessao do usuario autenticado."""
    usuario = current_user._get_current_object()
    registrar_log(ACAO_LOGOUT, f"Logout de {usuario.email}.", usuario, usuario.id)
    _confirmar("Falha ao registrar o logout.")
    logout_user()
    session.pop(CHAVE_SESSAO_FILTROS, None)
    return jsonify({"ok": True})


@app.route("/perfil/senha", methods=["POST"])
@login_required
def trocar_senha():
    dados = _dados_json()
    alterar_propria_senha(
        current_user._get_current_object(),
        dados.get("senha_atual") or "",
        dados.get("senha_nova") or "",
    )
    return jsonify({"ok": True})


# === Painel ===
@app.route("/api/painel")
@login_required
def painel():
    """Indicadores sobre o estado atual de cada processo."""
    historico, total = carregar_historico_painel()
    atuais = listar_estado_atual(historico)
    resumo = agregar_painel(
        atuais, hoje_local(APP_TZ), total_historico=total, historico_recente=historico
    )
    return jsonify({"ok": True, "painel": resumo.para_dict()})


# === Listagem de processos ===
@app.route("/api/processos", methods=["GET"])
@login_required
def listar_processos():
    """Pagina do historico conforme filtros.

    O `seq` recebido volta sem alteracao: o cliente numera cada busca com
    `fluxo.GuardaSequencia.emitir()` e so aplica a resposta cujo `seq`
    passar em `aceitar()`, descartando respostas que chegam fora de ordem.
    """
    estado = _estado_da_requisicao()
    salvar_filtros_sessao(estado)
    descritor = montar_consulta(estado)
    registros, total = consultar_historico(descritor)
    paginas = total_paginas(total, descritor["itens_por_pagina"])
    return jsonify(
        {
            "ok": True,
            "seq": request.args.get("seq", type=int),
            "processos": [registro.para_dict() for registro in registros],
            "total": total,
            "pagina": descritor["pagina"],
            "itens_por_pagina": descritor["itens_por_pagina"],
            "total_paginas": paginas,
            "paginas_visiveis": janela_paginas(descritor["pagina"], paginas),
            "filtros": estado.para_dict(),
        }
    )


@app.route("/api/processos/preferencias", methods=["GET", "POST", "DELETE"])
@login_required
def preferencias_processos():
    if request.method == "POST":
        estado = carregar_filtros_sessao().com_alteracoes(_dados_json())
        salvar_filtros_sessao(estado)
    elif request.method == "DELETE":
        estado = EstadoFiltros.limpo()
        salvar_filtros_sessao(estado)
    else:
        estado = carregar_filtros_sessao()
    return jsonify(
        {
            "ok": True,
            "filtros": estado.para_dict(),
            "debounce_ms": SEARCH_DEBOUNCE_MS,
            "itens_por_pagina_opcoes": ITENS_POR_PAGINA_OPCOES,
            "origens": ORIGENS_CGOF,
        }
    )


@app.route("/api/processos", methods=["POST"])
@login_required
def gravar_processo():
    processo = salvar_processo(_dados_json(), current_user._get_current_object())
    return jsonify({"ok": True, "processo": processo.para_registro().para_dict()})


@app.route("/api/processos/lote", methods=["PATCH"])
@admin_obrigatorio
def atualizar_lote():
    dados = _dados_json()
    total = atualizar_processos(
        dados.get("ids") or [], dados.get("alteracoes") or {}, current_user._get_current_object()
    )
    return jsonify({"ok": True, "atualizados": total})


@app.route("/api/processos/lote", methods=["DELETE"])
@admin_obrigatorio
def excluir_lote():
    total = excluir_processos(_dados_json().get("ids") or [], current_user._get_current_object())
    return jsonify({"ok": True, "excluidos": total})


@app.route("/api/processos/<string:processo_id>", methods=["DELETE"])
@login_required
def excluir(processo_id: str):
    excluir_processo(processo_id, current_user._get_current_object())
    return jsonify({"ok": True})


@app.route("/api/processos/historico")
@login_required
def historico():
    numero = request.args.get("numero", "")
    if not numero.strip():
        raise ErroValidacao("Informe o numero do processo.")
    registros = historico_do_numero(numero)
    return jsonify({"ok": True, "numero": numero.strip(), "historico": [r.para_dict() for r in registros]})


@app.route("/api/processos/historico/excluir-ultima", methods=["POST"])
@login_required
def excluir_ultima():
    dados = _dados_json()
    removido = excluir_ultima_movimentacao(
        dados.get("numero") or "", current_user._get_current_object(), dados.get("senha") or ""
    )
    return jsonify({"ok": True, "removido": removido.para_dict()})


@app.route("/api/processos/sugestoes/<string:campo>")
@login_required
def sugestoes(campo: str):
    return jsonify({"ok": True, "campo": campo, "valores": valores_distintos(campo)})


# === Importacao e exportacao ===
@app.route("/api/processos/importar", methods=["POST"])
@admin_obrigatorio
def importar_planilha():
    """Importa a planilha enviada no campo `arquivo`."""
    arquivo = request.files.get("arquivo")
    if arquivo is None or not arquivo.filename:
        raise ErroValidacao("Selecione uma planilha para importar.")
    erro = validar_extensao_planilha(arquivo.filename)
    if erro:
        raise ErroValidacao(erro)
    try:
        linhas = ler_planilha(BytesIO(arquivo.read()), arquivo.filename)
    except Exception as exc:
        app.logger.exception("Erro ao ler planilha de importacao: %s", exc)
        raise ErroValidacao(mensagem_erro_excel(exc)) from exc

    usuario = current_user._get_current_object()
    registros = linhas_para_registros(linhas, usuario.id)
    if not registros:
        raise ErroValidacao("A planilha nao possui linhas para importar.")
    importados = importar_registros(registros, usuario)
    return jsonify({"ok": True, "importados": importados})


def _estado_atual_completo() -> List[RegistroMovimentacao]:
    historico_painel, _ = carregar_historico_painel()
    return listar_estado_atual(historico_painel)


@app.route("/api/processos/exportar.xlsx")
@login_required
def exportar_planilha():
    hoje = hoje_local(APP_TZ)
    conteudo = exportar_excel(_estado_atual_completo(), hoje)
    return send_file(
        BytesIO(conteudo),
        as_attachment=True,
        download_name=nome_arquivo_excel(hoje),
        mimetype=MIMETYPE_EXCEL,
    )


@app.route("/api/processos/exportar.pdf")
@login_required
def exportar_relatorio_pdf():
    conteudo = exportar_pdf(_estado_atual_completo())
    return send_file(
        BytesIO(conteudo),
        as_attachment=True,
        download_name=nome_arquivo_pdf(),
        mimetype="application/pdf",
    )


# === Auditoria e usuarios ===
@app.route("/api/logs")
@admin_obrigatorio
def logs():
    return jsonify({"ok": True, "logs": [entrada.para_dict() for entrada in listar_logs()]})


@app.route("/api/usuarios", methods=["GET", "POST"])
@admin_obrigatorio
def usuarios():
    if request.method == "POST":
        usuario = salvar_usuario(_dados_json(), current_user._get_current_object())
        return jsonify({"ok": True, "usuario": usuario.para_dict()})
    lista = Usuario.query.order_by(Usuario.nome.asc()).all()
    return jsonify({"ok": True, "usuarios": [usuario.para_dict() for usuario in lista]})


@app.route("/api/usuarios/<string:usuario_id>", methods=["DELETE"])
@admin_obrigatorio
def remover_usuario(usuario_id: str):
    excluir_usuario(usuario_id, current_user._get_current_object())
    return jsonify({"ok": True})


@app.get("/health")
def health():
    return {"ok": True}


# === Comandos de linha ===
@app.cli.command("criar-admin")
@click.option("--nome", prompt="Nome")
@click.option("--email", prompt="Email")
@click.option("--senha", prompt="Senha", hide_input=True, confirmation_prompt=True)
def criar_admin_comando(nome: str, email: str, senha: str):
    """Cadastra o administrador inicial."""
    try:
        usuario = criar_administrador_inicial(nome, email, senha)
    except ErroFluxo as exc:
        raise click.ClickException(exc.mensagem) from exc
    click.echo(f"Administrador {usuario.email} criado.")


# === Bootstrap e entrypoints ===
def inicializar():
    """Garante a estrutura do banco."""
    if RESET_DATABASE_ON_START:
        app.logger.warning("RESET_DATABASE_ON_START=1 -> limpando todas as tabelas.")
        db.drop_all()
    db.create_all()
    app.logger.info("Banco pronto em %s.", app.config["SQLALCHEMY_DATABASE_URI"].split("@")[-1])


_APP_INICIALIZADO = False


def preparar_app() -> Flask:
    """Executa rotinas de inicializacao apenas uma vez por processo."""
    global _APP_INICIALIZADO
    if _APP_INICIALIZADO:
        return app

    with app.app_context():
        inicializar()
    _APP_INICIALIZADO = True
    return app


def create_app() -> Flask:
    """Entry point utilizado por `flask --app app:create_app run`."""
    return preparar_app()


# Garante as tabelas ao importar o modulo (evita erro de tabela inexistente no 1o request)
preparar_app()


def main():
    """Permite rodar a aplicacao diretamente com `python app.py`."""
    flask_app = preparar_app()
    host = os.environ.get("FLASK_RUN_HOST") or os.environ.get("HOST") or "0.0.0.0"
    port = int(os.environ.get("FLASK_RUN_PORT") or os.environ.get("PORT") or 5000)
    debug = _env_bool("FLASK_DEBUG", False)
    flask_app.run(host=host, port=port, debug=debug)


if __name__ == "__main__":
    main()
