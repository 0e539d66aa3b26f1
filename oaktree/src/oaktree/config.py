"""
Runtime configuration for OakTree.

Values come from the environment (optionally a `.env` file). Credentials have
no defaults; everything else does.
"""

import os
from dotenv import load_dotenv

load_dotenv()
load_dotenv('../.env')

OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o-mini")
QUESTION_MODEL = os.getenv("OAKTREE_QUESTION_MODEL", "gpt-4o")
ANALYSIS_MODEL = os.getenv("OAKTREE_ANALYSIS_MODEL", "gpt-4o")
SUMMARY_MODEL = os.getenv("OAKTREE_SUMMARY_MODEL", OPENAI_MODEL)

# No authentication yet: every course belongs to this teacher
DEFAULT_TEACHER_ID = os.getenv("OAKTREE_TEACHER_ID", "00000000-0000-0000-0000-000000000001")

MATERIALS_BUCKET = os.getenv("OAKTREE_MATERIALS_BUCKET", "materials")

CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv(
        "OAKTREE_CORS_ORIGINS",
        "http://localhost:3000,http://localhost:3001,http://127.0.0.1:3000",
    ).split(",")
    if origin.strip()
]

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
