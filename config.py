import os
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

class Config:
    # MongoDB Configuration
    MONGO_URI = os.getenv("MONGO_URI", "mongodb://localhost:27017")
    MONGO_DB = os.getenv("MONGO_DB", "campuslab")

    # OpenAI Configuration (AI assistant)
    OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
    OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4")

    # Piston code-execution API
    PISTON_URL = os.getenv("PISTON_URL", "https://emkc.org/api/v2")
    PISTON_COMPILE_TIMEOUT_MS = int(os.getenv("PISTON_COMPILE_TIMEOUT_MS", "10000"))
    PISTON_RUN_TIMEOUT_MS = int(os.getenv("PISTON_RUN_TIMEOUT_MS", "3000"))
    PISTON_HTTP_TIMEOUT = int(os.getenv("PISTON_HTTP_TIMEOUT", "30"))

    # Flask Configuration
    SECRET_KEY = os.getenv("SECRET_KEY", os.urandom(24).hex())
    DEBUG = os.getenv("DEBUG", "False").lower() == "true"
    HOST = os.getenv("HOST", "0.0.0.0")
    PORT = int(os.getenv("PORT", "5000"))
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    # Security Configuration
    SESSION_COOKIE_SECURE = os.getenv("SESSION_COOKIE_SECURE", "False").lower() == "true"
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = "Lax"

    # Test-taking rules
    MAX_VIOLATIONS = int(os.getenv("MAX_VIOLATIONS", "3"))
    SUBMISSION_GRACE_SECONDS = int(os.getenv("SUBMISSION_GRACE_SECONDS", "15"))

    # Password reset links stay valid for this long
    PASSWORD_RESET_TTL_MINUTES = int(os.getenv("PASSWORD_RESET_TTL_MINUTES", "30"))

    @staticmethod
    def validate_config():
        """Validate that required configuration is present"""
        errors = []

        if not Config.MONGO_URI:
            errors.append("MONGO_URI is required")

        if not Config.SECRET_KEY:
            errors.append("SECRET_KEY is required")

        if errors:
            raise RuntimeError(f"Configuration errors: {', '.join(errors)}")

        return True
