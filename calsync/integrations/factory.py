from typing import Dict, Type, Union

from calsync.core.constants import Provider
from calsync.core.exceptions import ConfigurationError
from calsync.integrations.base import ConnectionConfig, ProviderAdapter
from calsync.integrations.caldav.providers import (
    BaikalAdapter,
    CalDAVAdapter,
    NextcloudAdapter,
    OwnCloudAdapter,
    RadicaleAdapter,
    SabreDAVAdapter,
)
from calsync.integrations.google.calendar import GoogleCalendarAdapter
from calsync.integrations.outlook.calendar import OutlookCalendarAdapter


class ProviderFactory:
    """
    Factory class to create the adapter for an integration's provider
    """

    _adapters: Dict[Provider, Type[ProviderAdapter]] = {
        Provider.GOOGLE: GoogleCalendarAdapter,
        Provider.OUTLOOK: OutlookCalendarAdapter,
        Provider.CALDAV: CalDAVAdapter,
        Provider.NEXTCLOUD: NextcloudAdapter,
        Provider.OWNCLOUD: OwnCloudAdapter,
        Provider.RADICALE: RadicaleAdapter,
        Provider.BAIKAL: BaikalAdapter,
        Provider.SABREDAV: SabreDAVAdapter,
    }

    @classmethod
    def adapter_class(cls, provider: Union[Provider, str]) -> Type[ProviderAdapter]:
        try:
            return cls._adapters[Provider(provider)]
        except (KeyError, ValueError) as e:
            raise ConfigurationError(f"Unknown calendar provider: {provider}") from e

    @classmethod
    def create(cls, config: ConnectionConfig) -> ProviderAdapter:
        """Adapter bound to one integration snapshot."""
        return cls.adapter_class(config.provider)(config)
