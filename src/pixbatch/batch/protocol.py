PROTOCOL_VERSION = "1.0"

ERROR_CODES = {
    "ERROR": 1,
    "INVALID_INPUT": 2,
    "NOT_FOUND": 3,
    "PARSE_ERROR": 4,
    "GEOMETRY_ERROR": 5,
    "QUANTIZE_ERROR": 6,
    "OUTPUT_COLLISION": 7,
    "PARTIAL_FAILURE": 8,
}
