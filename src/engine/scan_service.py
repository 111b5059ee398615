# src/engine/scan_service.py
"""
ScanService: image inventory backed by the local Docker daemon.
"""
import uuid
from typing import Dict, List

import docker

from api.schemas import ImageInfo
from engine.models import ImageSource


class ScanService:
    def __init__(self, docker_client=None):
        self._docker_client = docker_client

    @property
    def docker_client(self):
        if self._docker_client is None:
            self._docker_client = docker.from_env()
        return self._docker_client

    def get_unique_images(self, targets=None) -> Dict[str, dict]:
        """
        Newest tag of every local repository, optionally restricted to ``targets``.
        """
        images = self.docker_client.images.list()
        unique_images = {}
        for image in images:
            for tag in image.tags or []:
                repo, version = tag.rsplit(":", 1) if ":" in tag.split("/")[-1] else (tag, "latest")
                if targets and repo not in targets:
                    continue
                if repo not in unique_images or unique_images[repo]["created"] < image.attrs["Created"]:
                    unique_images[repo] = {"tag": version, "created": image.attrs["Created"]}
        return unique_images

    def local_inventory(self, targets=None) -> List[ImageInfo]:
        return [
            ImageInfo(
                id=str(uuid.uuid5(uuid.NAMESPACE_URL, f"{repo}:{info['tag']}")),
                name=repo,
                tag=info["tag"],
                registry=None,
                source=ImageSource.LOCAL_DOCKER.value,
            )
            for repo, info in self.get_unique_images(targets).items()
        ]
