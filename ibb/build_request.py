"""
Build request models.

ImageConfig is the payload accepted by the API and carried through the
build queue. Field names on the wire are camelCase, matching what clients
send; Python code uses the snake_case attribute names.
"""

from typing import Annotated, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ibb.exceptions import DeserializationError


class ServiceConfig(BaseModel):
    """A systemd service to enable or disable in the image."""

    model_config = ConfigDict(populate_by_name=True)

    name: Annotated[str, Field(examples=["cloud-init", "sshd"], min_length=1)]
    disabled: bool = False


class PackageConfig(BaseModel):
    """A package to install into the image."""

    model_config = ConfigDict(populate_by_name=True)

    name: Annotated[str, Field(examples=["vim-enhanced"], min_length=1)]
    install_weak_dependencies: Annotated[
        bool, Field(alias="installWeakDependencies")
    ] = False
    package_type: Annotated[
        Optional[str], Field(alias="packageType", examples=["INDIVIDUAL"])
    ] = None
    repository_type: Annotated[
        Optional[str], Field(alias="repositoryType", examples=["UNSUPPORTED"])
    ] = None


class ImageConfig(BaseModel):
    """
    Configuration of one image build.

    Only the architecture is required. The image id is assigned by the
    submission service and must not change afterwards.
    """

    model_config = ConfigDict(populate_by_name=True)

    architecture: Annotated[
        str,
        Field(
            examples=["aarch64-uefi", "x86_64"],
            description="Target architecture of the image.",
            min_length=1,
        ),
    ]

    version: Annotated[
        Optional[str],
        Field(examples=["4.2"], description="Distribution version to build."),
    ] = None

    desktop: Annotated[
        Optional[str],
        Field(examples=["kde", "gnome"], description="Desktop environment."),
    ] = None

    services: list[ServiceConfig] = []

    packages: list[PackageConfig] = []

    image_id: Annotated[
        Optional[str],
        Field(
            alias="imageId",
            description="Identifier assigned when the request is submitted.",
        ),
    ] = None


class BuildStatus(BaseModel):
    """Status event published on the status exchange for one build."""

    model_config = ConfigDict(populate_by_name=True)

    image_id: Annotated[str, Field(alias="imageId")]
    status: Literal["started", "finished", "failed"]
    detail: Optional[str] = None


def serialize(model: BaseModel) -> bytes:
    """Encode a model as UTF-8 JSON using wire field names, omitting nulls."""
    return model.model_dump_json(by_alias=True, exclude_none=True).encode("utf-8")


def deserialize_image_config(body: bytes) -> ImageConfig:
    """Decode a message body into an ImageConfig.

    Raises:
        DeserializationError: If the body is not valid JSON or fails validation
    """
    try:
        return ImageConfig.model_validate_json(body)
    except ValidationError as e:
        raise DeserializationError(f"invalid build request: {e}") from e
