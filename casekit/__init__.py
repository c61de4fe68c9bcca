"""
Casekit Application Factory
"""
import os
from datetime import datetime, timezone
from flask import Flask, jsonify, redirect, url_for
from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate
from flask_login import LoginManager
from flask_wtf.csrf import CSRFProtect
from config import config

db = SQLAlchemy()
migrate = Migrate()
login_manager = LoginManager()
csrf = CSRFProtect()


def create_app(config_name='default'):
    app = Flask(__name__)
    app.config.from_object(config[config_name])
    app.logger.setLevel(app.config.get("LOG_LEVEL", "INFO"))

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)
    csrf.init_app(app)

    login_manager.login_view = 'auth.login'
    login_manager.login_message = 'Please log in to access this page.'

    # Register blueprints
    from casekit.auth import auth_bp
    from casekit.api import api_bp
    from casekit.codes import codes_bp
    from casekit.agents import agents_bp

    app.register_blueprint(auth_bp)
    app.register_blueprint(api_bp)
    app.register_blueprint(codes_bp)
    app.register_blueprint(agents_bp)

    # Exempt JSON routes from CSRF (the admin screens call them with fetch)
    csrf.exempt(api_bp)
    csrf.exempt(codes_bp)
    csrf.exempt(agents_bp)

    @app.route('/')
    def index():
        return redirect(url_for('api.list_cases'))

    @app.route('/healthz')
    def healthz():
        """Health check for load balancers and monitoring"""
        from casekit.services.openai_service import client_ready
        from casekit.services.pdf_service import ocr_ready

        try:
            from sqlalchemy import text
            db.session.execute(text('SELECT 1'))
            db_status = "ok"
        except Exception as e:
            db_status = f"error: {e}"

        ai_ok, ai_msg = client_ready()
        ocr_ok, ocr_msg = ocr_ready()
        return jsonify({
            "status": "ok" if db_status == "ok" else "degraded",
            "version": app.config["APP_VERSION"],
            "database": db_status,
            "openai_ready": ai_ok,
            "openai_message": ai_msg,
            "ocr_ready": ocr_ok,
            "ocr_message": ocr_msg,
            "timestamp": datetime.now(timezone.utc).isoformat()
        })

    @app.route('/version')
    def version():
        """Version and build info"""
        return jsonify({
            "version": app.config["APP_VERSION"],
            "build_time": app.config["BUILD_TIME"],
            "git_commit": app.config["GIT_COMMIT"],
            "features": {
                "ai_drafts": True,
                "agent_chat": True,
                "ocr_extraction": True,
                "pdf_export": True,
            }
        })

    with app.app_context():
        from sqlalchemy import inspect
        from casekit import models  # noqa: F401  (registers tables)

        if os.getenv('RESET_DB', '').strip() in ('1', 'true', 'yes'):
            app.logger.warning('RESET_DB is set - dropping all tables...')
            db.drop_all()
            db.create_all()
            app.logger.warning('Fresh tables created')
        else:
            # Only create tables if none exist (safe for existing DB)
            inspector = inspect(db.engine)
            if not inspector.get_table_names():
                app.logger.info('No tables found, creating...')
                db.create_all()

    return app
