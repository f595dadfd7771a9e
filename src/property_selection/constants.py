MIN_MASK_LENGTH = 3
MAX_MASK_ASTERISKS = 3
ADDRESS_MASK_KEEP = 2
ADDRESS_MASK_ASTERISKS = 5
MASK_TOKEN = "***"

DEFAULT_MAX_RESULTS = 100
OWNER_QUERY_CONCURRENCY = 5
# One token per concurrent owner query window.
TOKEN_POOL_SIZE = 5
OBJECT_ID_CHUNK_SIZE = 50

QUERY_TIMEOUT_S = 15.0
QUERY_MAX_RETRIES = 2
# ArcGIS servers reject long GET query strings; switch to form POST above this.
MAX_GET_URL_LENGTH = 1800

# Attribute names of the parcel ("fastighet") and owner layers.
FIELD_OBJECT_ID = "OBJECTID"
FIELD_FNR = "FNR"
FIELD_UUID = "UUID_FASTIGHET"
FIELD_LABEL = "FASTIGHET"
FIELD_NAME = "NAMN"
FIELD_ADDRESS = "BOSTADR"
FIELD_POSTAL_CODE = "POSTNR"
FIELD_CITY = "POSTADR"
FIELD_SHARE = "ANDEL"
FIELD_ORG_NUMBER = "ORGNR"
FIELD_OWNER_LIST = "AGARLISTA"
