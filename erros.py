"""Arquivo: erros.py | Objetivo: Excecoes de negocio do fluxo de processos."""


class ErroFluxo(Exception):
    """Falha exibida ao usuario com mensagem explicita."""

    status_http = 400

    def __init__(self, mensagem: str):
        super().__init__(mensagem)
        self.mensagem = mensagem


class ErroValidacao(ErroFluxo):
    """Campo obrigatorio ausente ou dado invalido no formulario."""

    status_http = 400


class ErroConflito(ErroFluxo):
    """Valor unico ja utilizado (ex.: email de login repetido)."""

    status_http = 409


class ErroAutenticacao(ErroFluxo):
    """Credenciais ou confirmacao de senha invalidas."""

    status_http = 401


class ErroTransporte(ErroFluxo):
    """Banco indisponivel ou consulta com falha."""

    status_http = 503
