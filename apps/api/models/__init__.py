from .api_key import ApiKey  # noqa: F401
from .consent import ConsentArtifact, ConsentArtifactPurpose, ConsentRenewal, ConsentRequest  # noqa: F401
from .consent_history import ConsentHistory  # noqa: F401
from .fiduciary import DataFiduciary  # noqa: F401
from .notification import OutboundNotification, WebhookLog  # noqa: F401
from .principal import DataPrincipal, PrincipalFiduciaryMap  # noqa: F401
from .purpose import Purpose, PurposeCategory, PurposeVersion  # noqa: F401
