from flask import Flask, jsonify
from flask_cors import CORS

import logging

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s"
)

logger = logging.getLogger(__name__)


def create_app(config_object: str | None = None, **overrides) -> Flask:
    """
    Application Factory

    Responsibilities:
    - Create Flask app instance
    - Load configuration (config.py, then config_object, then overrides)
    - Build the driver service
    - Register blueprints

    NO business logic must exist here.
    """

    app = Flask(__name__)

    # ------------------------------------------------------------------
    # CORS – allow all origins so the driver mobile app can connect
    # ------------------------------------------------------------------
    CORS(app)

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------
    app.config.from_mapping(
        ENV="production",
        DEBUG=False,
        TESTING=False,
    )
    app.config.from_object("config")
    if config_object:
        app.config.from_object(config_object)
    app.config.from_mapping(overrides)

    # ------------------------------------------------------------------
    # Services
    # ------------------------------------------------------------------
    from services.driver_service import DriverService

    app.extensions["driver_service"] = DriverService(
        db_path=app.config["DB_PATH"],
        capacity=app.config["BATCH_CAPACITY"],
        minutes_per_km=app.config["MINUTES_PER_KM"],
        maps_api_key=app.config["MAPS_API_KEY"],
        maps_base_url=app.config["MAPS_BASE_URL"],
        maps_timeout_s=app.config["MAPS_TIMEOUT_S"],
        default_page_size=app.config["DEFAULT_PAGE_SIZE"],
        max_page_size=app.config["MAX_PAGE_SIZE"],
        default_strategy=app.config["DEFAULT_STRATEGY"],
        remote_optimizer=app.config.get("REMOTE_OPTIMIZER"),
    )

    # ------------------------------------------------------------------
    # Blueprint Registration
    # ------------------------------------------------------------------
    from routes.driver_routes import drivers_bp

    app.register_blueprint(drivers_bp)

    @app.route("/health", methods=["GET"])
    def health():
        return jsonify({"status": "ok"})

    logger.info(f"[App] Driver dispatch service ready | db_path={app.config['DB_PATH']}")

    # ------------------------------------------------------------------
    # Return Application Instance
    # ------------------------------------------------------------------
    return app


# ----------------------------------------------------------------------
# Application Entry Point
# ----------------------------------------------------------------------
if __name__ == "__main__":
    application = create_app()
    logger.info(
        "[App] Driver endpoints: "
        + ", ".join(sorted(r.rule for r in application.url_map.iter_rules() if r.endpoint.startswith("drivers.")))
    )
    application.run(
        host=application.config["HOST"], port=application.config["PORT"], debug=False, use_reloader=False
    )
