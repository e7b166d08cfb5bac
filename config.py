import os
from openai import OpenAI

# ==========================================
# Configuration & Setup
# ==========================================
# Any OpenAI-compatible chat endpoint works. The default points at OpenRouter;
# set OPENAI_BASE_URL to https://api.openai.com/v1 or a local vLLM/Ollama server.

API_KEY = os.getenv("OPENAI_API_KEY", "your-api-key")
BASE_URL = os.getenv("OPENAI_BASE_URL", "https://openrouter.ai/api/v1")
MODEL_NAME = os.getenv("MODEL_NAME", "openai/chatgpt-4o-latest")

GENERATION_TEMPERATURE = float(os.getenv("GENERATION_TEMPERATURE", "0.7"))
GENERATION_MAX_TOKENS = int(os.getenv("GENERATION_MAX_TOKENS", "2000"))
GENERATION_TIMEOUT = float(os.getenv("GENERATION_TIMEOUT", "120"))

# Retry loop
MAX_ATTEMPTS = int(os.getenv("MAX_ATTEMPTS", "3"))
FEEDBACK_CHAR_LIMIT = int(os.getenv("FEEDBACK_CHAR_LIMIT", "4000"))

# Toolchain
TEST_TIMEOUT = int(os.getenv("TEST_TIMEOUT", "60"))
PROBE_TIMEOUT = int(os.getenv("PROBE_TIMEOUT", "15"))
OUTPUT_DIR = os.getenv("SCRYPTO_OUTPUT_DIR", "scrypto_output")

# Result ledger
RESULTS_FILE = os.getenv("RESULTS_FILE", "results.json")
LEDGER_CAP = int(os.getenv("LEDGER_CAP", "100"))

# Instantiate the client globally for the modules to share.
# max_retries=0: retrying is the orchestrator's job, not the HTTP layer's.
client = OpenAI(
    api_key=API_KEY,
    base_url=BASE_URL,
    timeout=GENERATION_TIMEOUT,
    max_retries=0,
)
