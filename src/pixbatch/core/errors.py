class OperationError(Exception):
    code = "ERROR"

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.code = code or self.code
        self.message = message


class ParseError(OperationError):
    code = "PARSE_ERROR"


class GeometryError(OperationError):
    code = "GEOMETRY_ERROR"


class QuantizeError(OperationError):
    code = "QUANTIZE_ERROR"


class OutputCollisionError(OperationError):
    code = "OUTPUT_COLLISION"
