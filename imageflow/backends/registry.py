"""Registry of backend providers and construction of the ordered client list."""

from typing import Callable, Dict, List

from ..core.error_recovery import RetryPolicy
from ..core.exceptions import ConfigurationError
from ..core.logging import get_logger
from .base import ImageBackend
from .client import BackendClient
from .gemini import GeminiBackend

logger = get_logger(__name__)


# A factory receives the model name and the application config.
BackendFactory = Callable[[str, object], ImageBackend]


def _gemini_factory(model: str, config) -> ImageBackend:
    return GeminiBackend(model=model, api_key=config.api_key, base_url=config.api_base_url)


class BackendRegistry:
    """Registry mapping provider names to backend factories."""

    def __init__(self):
        self._factories: Dict[str, BackendFactory] = {}

    def register_provider(self, name: str, factory: BackendFactory) -> None:
        """Register a backend factory under a provider name.

        Args:
            name: Unique provider identifier
            factory: Callable building an ImageBackend from (model, config)

        Raises:
            ConfigurationError: If the name is empty, taken, or the factory is not callable
        """
        if not name or not name.strip():
            raise ConfigurationError("Provider name cannot be empty")

        name = name.strip()

        if not callable(factory):
            raise ConfigurationError(f"Provider '{name}' factory must be callable", config_key="backend_provider")
        if name in self._factories:
            raise ConfigurationError(f"Provider '{name}' is already registered", config_key="backend_provider")

        self._factories[name] = factory
        logger.info(f"Registered backend provider '{name}'")

    def unregister_provider(self, name: str) -> bool:
        """Remove a provider. Returns False if it was not registered."""
        return self._factories.pop(name, None) is not None

    def list_providers(self) -> List[str]:
        return sorted(self._factories)

    def create_backend(self, provider: str, model: str, config) -> ImageBackend:
        """Instantiate one backend.

        Raises:
            ConfigurationError: If the provider is not registered
        """
        factory = self._factories.get(provider)
        if factory is None:
            raise ConfigurationError(
                f"Unknown backend provider '{provider}'. Registered: {', '.join(self.list_providers()) or 'none'}",
                config_key="backend_provider"
            )
        return factory(model, config)

    def build_clients(self, config) -> List[BackendClient]:
        """Build the ordered backend client list for one run.

        Args:
            config: AppConfig supplying provider, models, timeouts and retry settings

        Returns:
            One BackendClient per configured model, in preference order

        Raises:
            ConfigurationError: If no backend models are configured or the provider is unknown
        """
        if not config.backend_models:
            raise ConfigurationError("No backend models configured", config_key="backend_models")

        policy = RetryPolicy.from_config(config)
        clients = [
            BackendClient(
                self.create_backend(config.backend_provider, model, config),
                policy=policy,
                timeout=config.request_timeout
            )
            for model in config.backend_models
        ]
        logger.debug(f"Built {len(clients)} backend clients: {', '.join(c.name for c in clients)}")
        return clients


def create_default_registry() -> BackendRegistry:
    """Registry with the built-in providers."""
    registry = BackendRegistry()
    registry.register_provider("gemini", _gemini_factory)
    return registry
