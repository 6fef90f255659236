import os

from app.main import create_app

app = create_app()

if __name__ == "__main__":
    # The hosting environment may provide PORT; default to 8080 for local
    # development.
    port = int(os.environ.get("PORT", 8080))
    app.run(host="0.0.0.0", port=port)
