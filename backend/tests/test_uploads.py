"""
Image uploads: the content-type gate, resizing, and the routes that accept files.
"""
import io
from pathlib import Path

import pytest
from fastapi import UploadFile
from PIL import Image
from starlette.datastructures import Headers

from tourbook.core.errors import ValidationFailed
from tourbook.db.models import Role
from tourbook.services.uploads import image_file_filter, process_tour_images, process_user_photo


def png_bytes(size=(800, 600), color=(200, 80, 40)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format="PNG")
    return buffer.getvalue()


def upload(data: bytes, filename="photo.png", content_type="image/png") -> UploadFile:
    return UploadFile(file=io.BytesIO(data), filename=filename, headers=Headers({"content-type": content_type}))


@pytest.mark.parametrize(
    "content_type, accepted",
    [("image/png", True), ("image/jpeg", True), ("IMAGE/GIF", True), ("application/pdf", False), (None, False)],
)
def test_image_file_filter(content_type, accepted):
    ok, reason = image_file_filter(content_type)
    assert ok is accepted
    assert reason == (None if accepted else "Not an image. Please upload only images")


@pytest.mark.asyncio
async def test_user_photo_is_square_jpeg(tmp_path, make_user):
    user = await make_user()

    filename = await process_user_photo(upload(png_bytes()), user.id, str(tmp_path))

    assert filename.startswith(f"user-{user.id}-")
    assert filename.endswith(".jpeg")
    with Image.open(tmp_path / "img" / "users" / filename) as img:
        assert img.format == "JPEG"
        assert img.size == (500, 500)


@pytest.mark.asyncio
async def test_undecodable_image_is_rejected(tmp_path, make_user):
    user = await make_user()
    with pytest.raises(ValidationFailed):
        await process_user_photo(upload(b"definitely not a png"), user.id, str(tmp_path))


@pytest.mark.asyncio
async def test_tour_images_are_numbered(tmp_path, make_tour):
    tour = await make_tour()

    fields = await process_tour_images(
        tour.id,
        str(tmp_path),
        cover=upload(png_bytes()),
        images=[upload(png_bytes()), upload(png_bytes())],
    )

    assert fields["image_cover"].endswith("-cover.jpeg")
    assert [name.rsplit("-", 1)[-1] for name in fields["images"]] == ["1.jpeg", "2.jpeg"]
    folder = tmp_path / "img" / "tours"
    with Image.open(folder / fields["image_cover"]) as img:
        assert img.size == (2000, 1333)
    assert all((folder / name).exists() for name in fields["images"])


@pytest.mark.asyncio
async def test_tour_images_with_nothing_uploaded(tmp_path, make_tour):
    tour = await make_tour()
    assert await process_tour_images(tour.id, str(tmp_path)) == {}


@pytest.mark.asyncio
async def test_update_me_with_photo(client, make_user, auth_headers, settings):
    user = await make_user()

    response = await client.patch(
        "/api/v1/users/updateMe",
        data={"name": "Ann Photographer"},
        files={"photo": ("me.png", png_bytes(), "image/png")},
        headers=auth_headers(user),
    )

    assert response.status_code == 200
    updated = response.json()["data"]["user"]
    assert updated["name"] == "Ann Photographer"
    assert updated["photo"].startswith(f"user-{user.id}-")
    assert (Path(settings.MEDIA_ROOT) / "img" / "users" / updated["photo"]).exists()


@pytest.mark.asyncio
async def test_update_me_rejects_non_images(client, make_user, auth_headers):
    user = await make_user()
    response = await client.patch(
        "/api/v1/users/updateMe",
        files={"photo": ("notes.txt", b"hello", "text/plain")},
        headers=auth_headers(user),
    )
    assert response.status_code == 400
    assert response.json()["message"] == "Not an image. Please upload only images"


@pytest.mark.asyncio
async def test_tour_gallery_upload(client, make_user, make_tour, auth_headers):
    admin = await make_user(role=Role.ADMIN)
    tour = await make_tour()

    response = await client.patch(
        f"/api/v1/tours/{tour.id}",
        files=[
            ("imageCover", ("cover.png", png_bytes(), "image/png")),
            ("images", ("1.png", png_bytes(), "image/png")),
            ("images", ("2.png", png_bytes(), "image/png")),
        ],
        headers=auth_headers(admin),
    )

    assert response.status_code == 200
    updated = response.json()["data"]["data"]
    assert updated["imageCover"].startswith(f"tour-{tour.id}-")
    assert len(updated["images"]) == 2


@pytest.mark.asyncio
async def test_tour_gallery_upload_limit(client, make_user, make_tour, auth_headers):
    admin = await make_user(role=Role.ADMIN)
    tour = await make_tour()

    response = await client.patch(
        f"/api/v1/tours/{tour.id}",
        files=[("images", (f"{i}.png", png_bytes((40, 30)), "image/png")) for i in range(4)],
        headers=auth_headers(admin),
    )

    assert response.status_code == 400
    assert response.json()["message"] == "Unexpected field: images"
