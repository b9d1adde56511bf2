from mangum import Mangum
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from cashledger.api import app

# Serverless deployments are mounted under /api and do not run the background sweeps.
handler = Mangum(app, lifespan="off", api_gateway_base_path="/api")
