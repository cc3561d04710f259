from privacy_advisor.db.session import engine
from privacy_advisor.db.base import Base

# Import models so SQLAlchemy registers them
from privacy_advisor.scans.models import Scan  # noqa
from privacy_advisor.scans.evidence_models import Evidence  # noqa
from privacy_advisor.scans.issues_models import Issue  # noqa
from privacy_advisor.lists.models import CachedList  # noqa


def init_db(bind=None):
    Base.metadata.create_all(bind=bind or engine)
