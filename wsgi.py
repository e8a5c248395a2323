import os

from aegis import create_app

# config según FLASK_ENV (development | production | testing)
app = create_app(os.getenv("FLASK_ENV", "development"))

if __name__ == "__main__":
    # importante para Docker
    app.run(host="0.0.0.0", port=5000, debug=app.config.get("DEBUG", False), threaded=True)
