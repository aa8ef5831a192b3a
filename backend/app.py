from qwen_backend import create_app
from dotenv import load_dotenv
import logging

# Load environment variables from .env file
load_dotenv()

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

app = create_app()


def main() -> None:
    app.run(host="0.0.0.0", port=app.config.get("PORT", 5000), debug=False, threaded=True)


if __name__ == "__main__":
    main()
