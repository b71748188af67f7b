import os
import logging

from dotenv import load_dotenv

load_dotenv()

CHAT_API_KEY = os.getenv("CHAT_API_KEY", "").strip()
CHAT_API_URL = os.getenv("CHAT_API_URL", "https://api.openai.com").rstrip("/")
CHAT_MODEL = os.getenv("CHAT_MODEL", "gpt-4o").strip()
CHAT_TEMPERATURE = float(os.getenv("CHAT_TEMPERATURE", "0.7"))
CHAT_TIMEOUT = float(os.getenv("CHAT_TIMEOUT", "120"))

# Seconds before a spawned command is killed; 0 disables the limit.
COMMAND_TIMEOUT = float(os.getenv("COMMAND_TIMEOUT", "300"))

BASE_DIR = os.path.dirname(__file__)
WORKSPACE_DIR = os.path.join(BASE_DIR, "workspace")
PROJECTS_ROOT = os.getenv("PROJECTS_ROOT", "").strip() or os.path.join(WORKSPACE_DIR, "projects")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)

os.makedirs(PROJECTS_ROOT, exist_ok=True)
