"""
Excepciones personalizadas para el cliente CRM
"""
from typing import Optional, Union


class CrmException(Exception):
    """Excepción base para errores del cliente CRM"""
    def __init__(self, message: str, code: Optional[str] = None):
        self.message = message
        self.code = code
        super().__init__(self.message)


class CrmStructuralError(CrmException):
    """Falta un elemento o atributo esperado en un WSDL, política o respuesta"""
    pass


class CrmTransportError(CrmException):
    """Error de conexión, HTTP o respuesta que no es un envelope SOAP válido"""
    def __init__(
        self,
        message: str,
        http_status: Optional[int] = None,
        body: Optional[Union[bytes, str]] = None,
    ):
        self.http_status = http_status
        self.body = body
        super().__init__(message)


class CrmProtocolFault(CrmException):
    """SOAP Fault bien formado devuelto por el servidor"""
    def __init__(self, code: str, message: str, detail_code: Optional[str] = None):
        self.detail_code = detail_code
        super().__init__(message, code)

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class CrmStateError(CrmException):
    """Uso incorrecto de la API (entidad sin ID, ID en un create, etc.)"""
    pass
