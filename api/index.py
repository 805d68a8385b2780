from mangum import Mangum

from referrals.api import app

handler = Mangum(app)
