import os


class Config:
    """Base configuration"""

    # Database
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or 'sqlite:////data/bundlevault.db'
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Temp workspaces and default backup location
    TEMP_DIR = os.environ.get('TEMP_DIR') or '/data/temp'
    LOCAL_BACKUP_DIR = os.environ.get('LOCAL_BACKUP_DIR') or '/data/local_backups'

    # Logging
    LOG_DIR = os.environ.get('LOG_DIR') or os.path.join(
        os.path.dirname(os.path.dirname(os.path.abspath(__file__))), 'data', 'logs'
    )

    # SFTP transfers
    SFTP_CHUNK_SIZE = int(os.environ.get('SFTP_CHUNK_SIZE', 4 * 1024 * 1024))
    SFTP_CONNECT_TIMEOUT = int(os.environ.get('SFTP_CONNECT_TIMEOUT', 30))
    # Remote sha256sum of the uploaded bundle; unset waits indefinitely
    SFTP_VERIFY_TIMEOUT = float(os.environ['SFTP_VERIFY_TIMEOUT']) if os.environ.get('SFTP_VERIFY_TIMEOUT') else None

    # Scheduler
    SCHEDULER_TIMEZONE = 'UTC'


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    SQLALCHEMY_ECHO = False

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    SQLALCHEMY_DATABASE_URI = f'sqlite:///{os.path.join(DATA_DIR, "bundlevault.db")}'
    TEMP_DIR = os.path.join(DATA_DIR, 'temp')
    LOCAL_BACKUP_DIR = os.path.join(DATA_DIR, 'local_backups')


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    SQLALCHEMY_ECHO = False


class TestingConfig(Config):
    """Testing configuration (paths are overridden by the test fixtures)"""
    TESTING = True
    DEBUG = False
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': ProductionConfig
}
