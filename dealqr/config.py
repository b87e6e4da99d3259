import os


def _read_secret(paths):
    for p in paths:
        try:
            with open(p, 'r') as f:
                return f.read().strip()
        except OSError:
            continue
    return None


class Config:
    SECRET_KEY = os.environ.get('SECRET_KEY', 'dev')
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL', 'sqlite:///local.db')
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {'pool_pre_ping': True}
    JWT_PUBLIC_KEY = os.environ.get('JWT_PUBLIC_KEY')
    JWT_ALG = os.environ.get('JWT_ALG', 'RS256')
    REDEMPTION_TOKEN_SECRET = os.environ.get('REDEMPTION_TOKEN_SECRET', 'salt')
    REDIS_URL = os.environ.get('REDIS_URL', 'redis://localhost:6379/0')
    USE_REDIS = os.environ.get('USE_REDIS', '1').lower() not in ('0', 'false', 'no')
    QR_SCHEME = os.environ.get('QR_SCHEME', 'buzz')
    CLAIM_TTL_SECONDS = int(os.environ.get('CLAIM_TTL_SECONDS', '300'))
    REGEN_LIMIT = int(os.environ.get('REGEN_LIMIT', '5'))
    REGEN_WINDOW_SECONDS = int(os.environ.get('REGEN_WINDOW_SECONDS', '3600'))
    SCAN_VELOCITY_LIMIT = int(os.environ.get('SCAN_VELOCITY_LIMIT', '30'))
    SCAN_VELOCITY_WINDOW_SECONDS = int(os.environ.get('SCAN_VELOCITY_WINDOW_SECONDS', '60'))
    ADMIN_API_KEY = os.environ.get('ADMIN_API_KEY')
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO').upper()

    def __init__(self):
        # Optional fallbacks to support Secret Files on Render (/etc/secrets)
        if not self.JWT_PUBLIC_KEY:
            self.JWT_PUBLIC_KEY = _read_secret(('/etc/secrets/jwt.pub', 'jwt.pub'))
        if (not self.SECRET_KEY) or self.SECRET_KEY == 'dev':
            self.SECRET_KEY = _read_secret(('/etc/secrets/secret_key',)) or self.SECRET_KEY
        if (not self.REDEMPTION_TOKEN_SECRET) or self.REDEMPTION_TOKEN_SECRET == 'salt':
            self.REDEMPTION_TOKEN_SECRET = (
                _read_secret(('/etc/secrets/redemption_token_secret',)) or self.REDEMPTION_TOKEN_SECRET
            )
        if self.SQLALCHEMY_DATABASE_URI.startswith('sqlite'):
            # wait on the SQLite write lock instead of failing immediately
            self.SQLALCHEMY_ENGINE_OPTIONS = {'connect_args': {'timeout': 30}}
