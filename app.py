"""Application entry point for the pet clinic API."""

import logging

from petclinic.webapp import create_app

app = create_app()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    app.run(debug=True)
