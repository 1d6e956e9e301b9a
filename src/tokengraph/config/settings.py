import os
from dotenv import load_dotenv
load_dotenv()
# ---- Full node (JSON-RPC) ----
NODE_RPC_HOST = os.environ.get("NODE_RPC_HOST", "127.0.0.1")
NODE_RPC_PORT = int(os.environ.get("NODE_RPC_PORT", "8332"))
NODE_RPC_USER = os.environ.get("NODE_RPC_USER", "")
NODE_RPC_PASS = os.environ.get("NODE_RPC_PASS", "")

NODE_REQUESTS_PER_SEC = float(os.environ.get("NODE_REQUESTS_PER_SEC", "50"))
NODE_TIMEOUT_SEC = 15
NODE_MAX_RETRIES = 4

# ---- BitDB (indexed spend lookup) ----
BITDB_BASE_URL = os.environ.get("BITDB_BASE_URL", "https://bitdb.fountainhead.cash")
BITDB_TIMEOUT_SEC = 30
BITDB_REQUESTS_PER_SEC = 5.0
BITDB_MAX_OUTPUTS = 20      # vouts projected per matching transaction

# ---- SLP validation ----
SLP_VALIDATE_URL = os.environ.get("SLP_VALIDATE_URL", "https://rest.bitcoin.com/v2/slp/validateTxid")
SLP_VALIDATE_TIMEOUT_SEC = 30
SLP_VALIDATE_MAX_RETRIES = 3

# ---- Graph traversal ----
GRAPH_MAX_WORKERS = int(os.environ.get("GRAPH_MAX_WORKERS", "4"))
GRAPH_OUT_DIR = os.environ.get("GRAPH_OUT_DIR", "out")
