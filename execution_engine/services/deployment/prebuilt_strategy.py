"""
Deployment of pre-built web applications (compiled SPA bundles and similar).

The entry document gets a ``window.APP_CONFIG`` script so the bundle can
find the API and the user placeholders substituted by the hosting proxy.
"""
import json
import logging
import os
import re
from typing import Any, Dict, List, Optional

from execution_engine.core.config import settings
from execution_engine.schemas.deployment import (
    AppDeploymentRequest,
    AppDeploymentType,
    DeploymentValidationResult,
    ProgramFile,
)
from execution_engine.services.deployment.strategy_base import SITE_DIRECTORY, ServedDirectoryStrategy

logger = logging.getLogger(__name__)

CONFIG_SCRIPT_ID = "app-config"
_CONFIG_SCRIPT = re.compile(
    r'<script id="' + CONFIG_SCRIPT_ID + r'">.*?</script>\s*',
    re.DOTALL,
)


def build_app_config(program_id: str, request: AppDeploymentRequest, api_base_url: str = None) -> Dict[str, Any]:
    """APP_CONFIG contents; request.configuration overrides the defaults."""
    config = {
        "apiBaseUrl": api_base_url or settings.DEPLOYMENT_API_BASE_URL,
        "programId": program_id,
        "userToken": "{{USER_TOKEN}}",
        "userPermissions": "{{USER_PERMISSIONS}}",
        "userRoles": "{{USER_ROLES}}",
        "environment": settings.ENVIRONMENT,
        "features": list(request.supported_features),
        "apiIntegration": request.api_integration,
        "baseHref": request.base_href,
    }
    config.update(request.configuration)
    return config


def inject_app_config(html: str, config: Dict[str, Any]) -> str:
    """
    Put the config script before </head>, else before </body>, else at the end.

    A script injected earlier is replaced rather than duplicated.
    """
    # "</" inside a JSON string would close the script element early
    payload = json.dumps(config, indent=2, default=str).replace("</", "<\\/")
    script = f'<script id="{CONFIG_SCRIPT_ID}">\nwindow.APP_CONFIG = {payload};\n</script>\n'
    html = _CONFIG_SCRIPT.sub("", html)

    for marker in ("</head>", "</body>"):
        index = html.lower().find(marker)
        if index != -1:
            return html[:index] + script + html[index:]
    return html + script


class PreBuiltAppDeploymentStrategy(ServedDirectoryStrategy):
    """Serves a pre-built bundle with the injected application config."""

    deployment_type = AppDeploymentType.PRE_BUILT_WEB_APP

    def prepare_site(self, program_id: str, site_dir: str, entry_point: str, request: AppDeploymentRequest) -> None:
        self._inject(os.path.join(site_dir, entry_point), build_app_config(program_id, request))
        logger.info(f"Injected APP_CONFIG into {entry_point} for program {program_id}")

    @staticmethod
    def _inject(entry_path: str, config: Dict[str, Any]) -> None:
        with open(entry_path, "r", encoding="utf-8", errors="replace") as f:
            html = f.read()
        with open(entry_path, "w", encoding="utf-8") as f:
            f.write(inject_app_config(html, config))

    async def get_application_url(self, program_id: str) -> Optional[str]:
        instance = await self.registry.get(program_id)
        return instance.application_url if instance else None

    async def inject_configuration(self, program_id: str, configuration: Dict[str, Any]) -> bool:
        """
        Merge configuration into the deployed APP_CONFIG.

        Returns:
            False if the program is not deployed
        """
        async with self.registry.exclusive(program_id):
            instance = await self.registry.get(program_id)
            if instance is None:
                logger.warning(f"No instance found for program {program_id}")
                return False
            merged = {**instance.configuration, **configuration}
            site_config = self.read_site_config(instance.deployment_path)
            request = AppDeploymentRequest(
                configuration=merged,
                base_href=site_config.base_href,
                spa_routing=site_config.spa_routing,
            )
            entry_path = os.path.join(instance.deployment_path, SITE_DIRECTORY, site_config.entry_point)
            self._inject(entry_path, build_app_config(program_id, request))
            await self.registry.update(program_id, configuration=merged)
            logger.info(f"Updated APP_CONFIG for program {program_id}")
            return True

    async def update_security_headers(self, program_id: str, headers: Dict[str, str]) -> bool:
        """Merge security headers into the site config; a running server is restarted."""
        return await self.update_site_config(
            program_id, lambda config: {"security_headers": {**config.security_headers, **headers}}
        )

    async def validate(
        self,
        program_id: str,
        request: AppDeploymentRequest,
        files: Optional[List[ProgramFile]] = None,
    ) -> DeploymentValidationResult:
        result = await super().validate(program_id, request, files)
        if request.api_integration and "apiBaseUrl" not in request.configuration:
            result.recommendations.append(
                f"apiBaseUrl is not configured; {settings.DEPLOYMENT_API_BASE_URL} will be injected"
            )
        return result
