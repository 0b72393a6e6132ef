from mangum import Mangum

from referral_ledger.api import app

handler = Mangum(app)
