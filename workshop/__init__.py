import os
import logging
from flask import Flask, jsonify
from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate
from dotenv import load_dotenv

from .config import DevConfig, ProdConfig

# Initialize extensions
db = SQLAlchemy()
migrate = Migrate()


def create_app(config_name: str | None = None) -> Flask:
    """Application factory with environment based configuration."""
    load_dotenv()

    app = Flask(__name__, instance_relative_config=True)
    os.makedirs(app.instance_path, exist_ok=True)

    # Pick configuration
    env = config_name or os.getenv('ENV') or os.getenv('FLASK_ENV') or 'production'
    cfg_cls = DevConfig if env == 'development' else ProdConfig
    app.config.from_object(cfg_cls)
    # DATABASE_URL may change after the config module was imported
    if os.getenv('DATABASE_URL'):
        app.config['SQLALCHEMY_DATABASE_URI'] = os.environ['DATABASE_URL']

    # Initialise logging
    logging.basicConfig(level=logging.DEBUG if app.debug else logging.INFO)

    db.init_app(app)
    migrate.init_app(app, db)

    # Ensure models loaded so tables can be created
    from workshop import models  # noqa
    with app.app_context():
        db.create_all()

    @app.errorhandler(404)
    def not_found(_):
        return jsonify(success=False, error='Not found'), 404

    @app.errorhandler(500)
    def server_error(_):
        return jsonify(success=False, error='Internal server error'), 500

    from workshop.jobcards.routes import bp as jobcards_bp
    from workshop.cli import jobcards_cli

    app.register_blueprint(jobcards_bp, url_prefix='/jobcards')
    app.cli.add_command(jobcards_cli)

    return app
