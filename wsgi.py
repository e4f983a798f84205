import os

from trust_monitor import create_app

app = create_app(os.getenv("FLASK_ENV", "development"))

if __name__ == "__main__":
    # bind all interfaces for Docker
    app.run(host="0.0.0.0", port=5000, debug=app.config.get("DEBUG", False))
