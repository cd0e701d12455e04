from flask import Flask
from werkzeug.exceptions import RequestEntityTooLarge

from .extensions import init_extensions


def create_app(start_background=True):
    """App factory entrypoint.

    Importing ``runtime`` loads config, logging, Sentry and the store clients;
    the factory only builds the Flask app around them.
    """
    from . import runtime
    from .blueprints import consent_bp, convert_bp

    app = Flask(__name__)
    app.secret_key = runtime.config.flask_secret_key or None
    app.config['MAX_CONTENT_LENGTH'] = runtime.MAX_CONTENT_LENGTH
    runtime.register_request_hooks(app)
    app.register_error_handler(RequestEntityTooLarge, runtime.handle_request_entity_too_large)
    app.register_blueprint(consent_bp)
    app.register_blueprint(convert_bp)
    if start_background:
        init_extensions(app, runtime)
    return app
