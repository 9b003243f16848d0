"""
Deployment of static sites with cache, CDN and custom header options.
"""
import logging
from typing import Dict, List, Optional

from execution_engine.core.exceptions import InvalidConfigurationError
from execution_engine.schemas.deployment import (
    AppDeploymentRequest,
    AppDeploymentType,
    DeploymentValidationResult,
    ProgramFile,
    StaticSiteDeploymentRequest,
)
from execution_engine.services.deployment.site_server import CACHE_POLICIES, SiteConfig
from execution_engine.services.deployment.strategy_base import ServedDirectoryStrategy

logger = logging.getLogger(__name__)


class StaticSiteDeploymentStrategy(ServedDirectoryStrategy):
    """Serves a directory of static files as-is."""

    deployment_type = AppDeploymentType.STATIC_SITE

    def build_site_config(
        self,
        program_id: str,
        site_dir: str,
        port: int,
        entry_point: str,
        request: AppDeploymentRequest,
    ) -> SiteConfig:
        config = super().build_site_config(program_id, site_dir, port, entry_point, request)
        if isinstance(request, StaticSiteDeploymentRequest):
            if request.caching_strategy not in CACHE_POLICIES:
                raise InvalidConfigurationError("caching_strategy", f"Unknown caching strategy: {request.caching_strategy}")
            config = config.model_copy(update={
                "cache_strategy": request.caching_strategy,
                "cdn_enabled": request.cdn_enabled,
                "headers": dict(request.headers),
            })
        return config

    async def setup_caching(self, program_id: str, cache_strategy: str) -> bool:
        """
        Switch the Cache-Control policy (aggressive, moderate or none).

        Raises:
            InvalidConfigurationError: If the strategy is unknown
        """
        if cache_strategy not in CACHE_POLICIES:
            raise InvalidConfigurationError("cache_strategy", f"Unknown caching strategy: {cache_strategy}")
        logger.info(f"Setting cache strategy {cache_strategy} for program {program_id}")
        return await self.update_site_config(program_id, lambda config: {"cache_strategy": cache_strategy})

    async def enable_cdn(self, program_id: str, enabled: bool = True) -> bool:
        logger.info(f"{'Enabling' if enabled else 'Disabling'} CDN headers for program {program_id}")
        return await self.update_site_config(program_id, lambda config: {"cdn_enabled": enabled})

    async def update_custom_headers(self, program_id: str, headers: Dict[str, str]) -> bool:
        """Merge response headers into the site config; a running server is restarted."""
        return await self.update_site_config(program_id, lambda config: {"headers": {**config.headers, **headers}})

    async def validate(
        self,
        program_id: str,
        request: AppDeploymentRequest,
        files: Optional[List[ProgramFile]] = None,
    ) -> DeploymentValidationResult:
        result = await super().validate(program_id, request, files)
        if isinstance(request, StaticSiteDeploymentRequest):
            if request.caching_strategy not in CACHE_POLICIES:
                result.is_valid = False
                result.errors.append(
                    f"Unknown caching strategy: {request.caching_strategy} "
                    f"(expected one of {', '.join(CACHE_POLICIES)})"
                )
            if request.cdn_enabled and not request.domain_name:
                result.recommendations.append("Set domain_name when serving through a CDN")
            result.validated_configuration["caching_strategy"] = request.caching_strategy
            result.validated_configuration["cdn_enabled"] = request.cdn_enabled
        return result
