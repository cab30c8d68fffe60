from mangum import Mangum

from license_ledger.api import create_app
from license_ledger.logging_config import setup_logging

setup_logging()

app = create_app(root_path="/api")

handler = Mangum(app)
