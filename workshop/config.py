import os

class BaseConfig:
    SECRET_KEY = os.getenv('SECRET_KEY', 'change-me')
    SQLALCHEMY_DATABASE_URI = os.getenv('DATABASE_URL', 'sqlite:///workshop.db')
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Workshop backend
    WORKSHOP_API_URL = os.getenv('WORKSHOP_API_URL', 'http://localhost:5000')
    WORKSHOP_API_TOKEN = os.getenv('WORKSHOP_API_TOKEN', '')
    WORKSHOP_API_TIMEOUT = float(os.getenv('WORKSHOP_API_TIMEOUT', '10'))
    WORKSHOP_API_RETRIES = int(os.getenv('WORKSHOP_API_RETRIES', '3'))

    # Job cards
    DRAFT_STORAGE_KEY = os.getenv('DRAFT_STORAGE_KEY', 'jobCardDraft')
    LOGIN_URL = os.getenv('LOGIN_URL', '/login')
    AUTH_REDIRECT_DELAY = float(os.getenv('AUTH_REDIRECT_DELAY', '2'))

class DevConfig(BaseConfig):
    DEBUG = True
    ENV = 'development'

class ProdConfig(BaseConfig):
    DEBUG = False
    ENV = 'production'
    SESSION_COOKIE_SECURE = True
