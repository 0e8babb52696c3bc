"""
Hamorah Configuration Module
Centralized configuration for the inference engine.
"""

import os
import sys
from pathlib import Path

import yaml

# Debug Mode Configuration
DEBUG_MODE = os.environ.get('DEBUG', 'false').lower() == 'true'

# Application Paths
APP_NAME = "Hamorah"
_SUPPORT_ROOT = os.environ.get('HAMORAH_HOME') or os.environ.get('APPDATA', os.path.expanduser('~/.config'))
APP_SUPPORT_DIR = Path(_SUPPORT_ROOT) / APP_NAME
MODELS_DIR = APP_SUPPORT_DIR / "models"
LIBRARY_DIR = APP_SUPPORT_DIR / "llama_lib"
LLAMAFILE_DIR = APP_SUPPORT_DIR / "llamafile"
LOGS_DIR = APP_SUPPORT_DIR / "logs"
CONFIG_DIR = APP_SUPPORT_DIR / "config"
USER_PROMPTS_DIR = APP_SUPPORT_DIR / "prompts"  # User persona overrides survive app updates

# Ensure directories exist
for directory in [APP_SUPPORT_DIR, MODELS_DIR, LIBRARY_DIR, LLAMAFILE_DIR, LOGS_DIR, CONFIG_DIR, USER_PROMPTS_DIR]:
    directory.mkdir(parents=True, exist_ok=True)

# Secure preference storage (provider selection, cloud credential)
PREFERENCES_FILE = CONFIG_DIR / "secure_preferences.json"

# Built-in data shipped with the application
PROMPTS_DIR = Path(__file__).parent.parent / "config" / "prompts"

# Cloud Provider Configuration (xAI Grok, OpenAI-compatible chat completions)
CLOUD_API_URL = "https://api.x.ai/v1/chat/completions"
CLOUD_MODEL_NAME = "grok-3-latest"
CLOUD_TIMEOUT_SECONDS = 60
CLOUD_MAX_TOKENS = 1024
CLOUD_HISTORY_TURNS = 10  # Cloud models have room for a longer replay window

# Local Inference Configuration
# Small local models have 2k context windows; keep the replayed history short
LOCAL_HISTORY_TURNS = 4
LOCAL_MAX_TOKENS = 512           # Hard token budget per response
LOCAL_YIELD_EVERY_TOKENS = 10    # Cede control to the event loop every N tokens
LOCAL_CONTEXT_TOKENS = 2048
DEFAULT_TEMPERATURE = 0.7
DEFAULT_TOP_P = 0.9

# Desktop platforms can run either the native llama.cpp library or a llamafile server
DESKTOP_LOCAL_BACKEND = os.environ.get('HAMORAH_DESKTOP_BACKEND', 'llama_cpp').lower()

# Local Server (llamafile) Configuration
LOCAL_SERVER_HOST = "127.0.0.1"
LOCAL_SERVER_PORT = 8065          # Avoid common ports
LOCAL_SERVER_HEALTH_RETRIES = 30
LOCAL_SERVER_HEALTH_INTERVAL_SECONDS = 1.0
LOCAL_SERVER_HEALTH_TIMEOUT_SECONDS = 2
LOCAL_SERVER_TIMEOUT_SECONDS = 60
LOCAL_SERVER_SHUTDOWN_SECONDS = 5

# Download Configuration
DOWNLOAD_CHUNK_BYTES = 1024 * 1024
DOWNLOAD_SIZE_TOLERANCE = 0.01    # 1% slack between received and expected size
DOWNLOAD_CONNECT_TIMEOUT_SECONDS = 15
DOWNLOAD_READ_TIMEOUT_SECONDS = 60
DOWNLOAD_SUFFIX = ".downloading"

# --- Artifact Catalog ---
ARTIFACT_CONFIG_FILE = Path(__file__).parent.parent / "config" / "models.yaml"
ARTIFACT_CONFIGS = {}

# Used when config/models.yaml is missing or broken
_FALLBACK_ARTIFACTS = {
    'tinyllama-gguf': {
        'display_name': 'TinyLlama 1.1B Chat (GGUF)',
        'url': 'https://huggingface.co/TheBloke/TinyLlama-1.1B-Chat-v1.0-GGUF/resolve/main/tinyllama-1.1b-chat-v1.0.Q4_K_M.gguf',
        'filename': 'tinyllama-1.1b-chat-v1.0.Q4_K_M.gguf',
        'expected_size_bytes': 669000000,
        'min_size_bytes': 100000000,
        'model_family': 'tinyllama',
    },
    'llama-cpp-runtime': {
        'display_name': 'llama.cpp runtime (b7626)',
        'urls': {
            'windows': 'https://github.com/ggml-org/llama.cpp/releases/download/b7626/llama-b7626-bin-win-cpu-x64.zip',
            'macos': 'https://github.com/ggml-org/llama.cpp/releases/download/b7626/llama-b7626-bin-macos-arm64.zip',
            'linux': 'https://github.com/ggml-org/llama.cpp/releases/download/b7626/llama-b7626-bin-linux-x64.zip',
        },
        'filename': 'llama.zip',
        'expected_size_bytes': 30000000,
        'min_size_bytes': 1000000,
    },
    'tinyllama-llamafile': {
        'display_name': 'TinyLlama 1.1B Chat (llamafile)',
        'url': 'https://huggingface.co/jartine/TinyLlama-1.1B-Chat-v1.0-GGUF/resolve/main/TinyLlama-1.1B-Chat-v1.0.Q4_K_M.llamafile',
        'filename': 'tinyllama.llamafile',
        'filenames': {'windows': 'tinyllama.exe'},
        'expected_size_bytes': 911000000,
        'min_size_bytes': 100000000,
        'model_family': 'tinyllama',
    },
    'phi3-mini-onnx': {
        'display_name': 'Phi-3 Mini 4K Instruct (ONNX int4)',
        'url': 'https://models.hamorah.example.com/phi-3-mini-4k-instruct-cpu-int4.zip',
        'filename': 'phi-3-mini-4k-instruct-cpu-int4.zip',
        'expected_size_bytes': 2300000000,
        'min_size_bytes': 1000000000,
        'model_family': 'phi-3',
    },
}


def load_artifact_configs():
    """Loads artifact definitions from config/models.yaml."""
    global ARTIFACT_CONFIGS
    try:
        with open(ARTIFACT_CONFIG_FILE, encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
            ARTIFACT_CONFIGS = data.get('artifacts', {})
        if DEBUG_MODE and ARTIFACT_CONFIGS:
            from hamorah.logging_config import debug_log
            debug_log(f"[Config] Loaded {len(ARTIFACT_CONFIGS)} artifact definitions from {ARTIFACT_CONFIG_FILE}")
    except FileNotFoundError:
        if DEBUG_MODE:
            from hamorah.logging_config import debug_log
            debug_log(f"[Config] WARNING: Artifact catalog not found at {ARTIFACT_CONFIG_FILE}. Using fallback values.")
        ARTIFACT_CONFIGS = {}
    except Exception as e:
        from hamorah.logging_config import debug_log
        debug_log(f"[Config] ERROR: Failed to load or parse artifact catalog: {e}")
        ARTIFACT_CONFIGS = {}


def get_artifact_config(artifact_id: str) -> dict:
    """
    Returns the catalog entry for an artifact, with fallbacks.

    Args:
        artifact_id: Catalog key (e.g., 'tinyllama-gguf').

    Returns:
        A dictionary describing the artifact.

    Raises:
        KeyError: If the artifact is neither in the catalog nor a built-in fallback.
    """
    if not ARTIFACT_CONFIGS:
        load_artifact_configs()

    if artifact_id in ARTIFACT_CONFIGS:
        return ARTIFACT_CONFIGS[artifact_id]

    if artifact_id in _FALLBACK_ARTIFACTS:
        if DEBUG_MODE:
            from hamorah.logging_config import debug_log
            debug_log(f"[Config] WARNING: '{artifact_id}' not in catalog. Using built-in definition.")
        return _FALLBACK_ARTIFACTS[artifact_id]

    raise KeyError(f"Unknown artifact: {artifact_id}")


def platform_key(platform_id: str = None) -> str:
    """Map sys.platform to the short keys used by per-platform catalog URLs."""
    platform_id = platform_id or sys.platform
    if platform_id == 'win32':
        return 'windows'
    if platform_id == 'darwin':
        return 'macos'
    return 'linux'


# Load catalog on module import
load_artifact_configs()
# --- End Artifact Catalog ---

# Logging Configuration
LOG_FILE = LOGS_DIR / "processing.log"
DEBUG_FLOW_FILE = LOGS_DIR / "debug_flow.txt"
LOG_FORMAT = "[%(levelname)s %(asctime)s] %(message)s"
LOG_DATE_FORMAT = "%H:%M:%S"
