"""
Casekit Configuration
Supports AWS Parameter Store for production secrets
"""
import os

import boto3


def get_parameter(name: str, default: str = "") -> str:
    """Get parameter from AWS Parameter Store or environment"""
    # Environment variable takes precedence
    env_key = name.upper().replace("-", "_").replace("/", "_")
    if env_key in os.environ:
        return os.environ[env_key]

    if os.environ.get("USE_PARAMETER_STORE"):
        try:
            ssm = boto3.client("ssm", region_name=os.environ.get("AWS_REGION", "us-east-1"))
            path = os.environ.get("PARAMETER_STORE_PATH", "/casekit/prod/")
            response = ssm.get_parameter(Name=f"{path}{name}", WithDecryption=True)
            return response["Parameter"]["Value"]
        except Exception as e:
            print(f"Warning: Could not load {name} from Parameter Store: {e}")

    return default


def _int_env(name: str, default: int) -> int:
    try:
        return int(os.environ.get(name, default))
    except (TypeError, ValueError):
        return default


class Config:
    """Base configuration"""
    # Flask
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-change-in-production")

    # Database
    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL", "sqlite:///casekit.db")
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {"pool_pre_ping": True}

    # Fix Heroku/Render style postgres:// URLs
    if SQLALCHEMY_DATABASE_URI.startswith("postgres://"):
        SQLALCHEMY_DATABASE_URI = SQLALCHEMY_DATABASE_URI.replace("postgres://", "postgresql://", 1)

    # Session
    SESSION_PERMANENT = False
    PERMANENT_SESSION_LIFETIME = 86400

    # Security
    WTF_CSRF_ENABLED = True
    WTF_CSRF_TIME_LIMIT = 3600

    # Uploads
    MAX_CONTENT_LENGTH = 50 * 1024 * 1024  # 50MB, same as the bucket limit

    # OpenAI
    OPENAI_API_KEY = os.environ.get("OPENAI_API_KEY", "")
    OPENAI_MODEL = os.environ.get("OPENAI_MODEL", "gpt-4.1")

    # AWS
    AWS_REGION = os.environ.get("AWS_REGION", "us-east-1")
    AWS_S3_BUCKET = os.environ.get("AWS_S3_BUCKET", "case-files")
    S3_PUBLIC_BASE_URL = os.environ.get("S3_PUBLIC_BASE_URL", "")

    # Text extraction
    EXTRACTION_MIN_TEXT_LENGTH = _int_env("EXTRACTION_MIN_TEXT_LENGTH", 50)
    EXTRACTION_STALE_SECONDS = _int_env("EXTRACTION_STALE_SECONDS", 300)
    EXTRACTION_INLINE = os.environ.get("EXTRACTION_INLINE", "0") == "1"
    DOWNLOAD_TIMEOUT = _int_env("DOWNLOAD_TIMEOUT", 30)
    OCR_LANGUAGE = os.environ.get("OCR_LANGUAGE", "eng")

    # PDF export
    EXPORT_SCALE = _int_env("EXPORT_SCALE", 2)

    # Activation codes
    CODE_PREFIX = os.environ.get("CODE_PREFIX", "NEW")

    # Logging
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # App Version
    APP_VERSION = os.environ.get("APP_VERSION", "2026.10")
    BUILD_TIME = os.environ.get("BUILD_TIME", "")
    GIT_COMMIT = os.environ.get("GIT_COMMIT", "")


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    TESTING = False
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "DEBUG")


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    TESTING = False

    # Override with Parameter Store in production
    SECRET_KEY = get_parameter("secret-key", Config.SECRET_KEY)
    OPENAI_API_KEY = get_parameter("openai-api-key", Config.OPENAI_API_KEY)
    AWS_S3_BUCKET = get_parameter("aws-s3-bucket", Config.AWS_S3_BUCKET)


class TestingConfig(Config):
    """Testing configuration"""
    DEBUG = True
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    SQLALCHEMY_ENGINE_OPTIONS = {}
    WTF_CSRF_ENABLED = False
    EXTRACTION_INLINE = True
    OPENAI_API_KEY = ""
    AWS_S3_BUCKET = "test-case-files"
    S3_PUBLIC_BASE_URL = "https://files.example.test"


config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': DevelopmentConfig,
}
