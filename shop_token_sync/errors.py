"""
Hierarquia de erros do serviço de tokens.

Erros de uma loja dentro de um lote são capturados e registrados no relatório;
erros de uma renovação sob demanda chegam ao chamador sem alteração.
"""


class TokenSyncError(Exception):
    """Erro base do serviço."""

    retryable = False


class ConfigError(TokenSyncError):
    """Credenciais ou configuração ausentes."""
    ...


class InvalidRequest(TokenSyncError):
    """Entrada malformada fornecida pelo chamador (ex.: code vazio)."""
    ...


class AuthError(TokenSyncError):
    """O marketplace rejeitou o code ou o refresh_token. Exige nova autorização."""
    ...


class NetworkError(TokenSyncError):
    """Marketplace inacessível ou timeout. Nova tentativa na próxima execução."""

    retryable = True


class ConflictError(TokenSyncError):
    """Operação concorrente já em andamento para a mesma loja."""
    ...


class InvalidTransitionError(TokenSyncError):
    """Uso incorreto da máquina de estados de sincronização."""
    ...


class StorageError(TokenSyncError):
    """Falha ao ler ou gravar no banco de dados."""

    retryable = True


class RefreshError(TokenSyncError):
    """Falha na renovação do token de uma loja. O token anterior é preservado."""

    def __init__(self, shop_id, cause):
        self.shop_id = shop_id
        self.cause = cause
        super().__init__(f"Falha ao renovar token da loja {shop_id}: {cause}")

    @property
    def retryable(self):
        return getattr(self.cause, "retryable", False)

    @property
    def requires_reauthorization(self):
        return isinstance(self.cause, AuthError)
