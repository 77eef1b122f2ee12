"""Parsing of S3 XML responses and building of XML request bodies.

S3 namespaces its responses (``http://s3.amazonaws.com/doc/2006-03-01/``)
but some compatible servers don't, so element names are matched on their
local name only.
"""

import xml.etree.ElementTree as ET
from datetime import datetime
from typing import Optional

from s3lite.errors import ProtocolError, ServerError
from s3lite.helpers import sanitize_etag
from s3lite.models import CommonPrefix, ObjectInfo, PartETag

S3_NAMESPACE = "http://s3.amazonaws.com/doc/2006-03-01/"


def local_name(tag: str) -> str:
    """Strip the ``{namespace}`` prefix from an element tag."""
    return tag.rsplit("}", 1)[-1]


def parse_xml(text: str) -> ET.Element:
    """Parse an XML document and return its root element.

    Raises:
        ProtocolError: If the text is not well-formed XML.
    """
    try:
        return ET.fromstring(text)
    except ET.ParseError as e:
        raise ProtocolError(f"Unable to parse XML response: {text!r}") from e


def find_child(element: ET.Element, name: str) -> Optional[ET.Element]:
    for child in element:
        if local_name(child.tag) == name:
            return child
    return None


def find_children(element: ET.Element, name: str) -> list[ET.Element]:
    return [child for child in element if local_name(child.tag) == name]


def find_text(element: ET.Element, name: str) -> Optional[str]:
    """Text of the first direct child called ``name``, or None."""
    child = find_child(element, name)
    if child is None:
        return None
    return child.text or ""


def parse_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO 8601 timestamp such as ``2009-10-12T17:50:30.000Z``."""
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _expect_root(text: str, name: str) -> ET.Element:
    root = parse_xml(text)
    if local_name(root.tag) != name:
        raise ProtocolError(f"Unexpected response: {text}")
    return root


def parse_server_error(
    status_code: int,
    text: str,
    bucket_name: Optional[str] = None,
    object_name: Optional[str] = None,
) -> ServerError:
    """Build a ServerError from an S3 ``<Error>`` response body.

    Bodies that are empty or not an S3 error document (HEAD responses,
    proxies returning HTML) produce an ``UnrecognizedError``.
    """
    root = None
    if text.strip():
        try:
            root = ET.fromstring(text)
        except ET.ParseError:
            root = None

    if root is None or local_name(root.tag) != "Error":
        if status_code == 404 and object_name:
            code, message = "NoSuchKey", "The specified key does not exist."
        else:
            code = "UnrecognizedError"
            message = f"Error response from the server (HTTP {status_code})"
            if text.strip():
                message += f": {text[:200]}"
        return ServerError(
            status_code,
            code,
            message,
            key=object_name,
            bucket_name=bucket_name,
        )

    return ServerError(
        status_code,
        find_text(root, "Code") or "UnrecognizedError",
        find_text(root, "Message") or f"Error response from the server (HTTP {status_code})",
        key=find_text(root, "Key") or object_name,
        bucket_name=find_text(root, "BucketName") or bucket_name,
        resource=find_text(root, "Resource"),
        region=find_text(root, "Region"),
        request_id=find_text(root, "RequestId"),
    )


def parse_initiate_multipart_upload(text: str) -> str:
    """Extract the upload ID from an InitiateMultipartUploadResult.

    Example::

        <InitiateMultipartUploadResult xmlns="http://s3.amazonaws.com/doc/2006-03-01/">
          <Bucket>dev-bucket</Bucket>
          <Key>test-32m.dat</Key>
          <UploadId>422f976b-35e0-4a55-aca7-bf2d46277f93</UploadId>
        </InitiateMultipartUploadResult>

    Raises:
        ProtocolError: If the root element or UploadId is missing.
    """
    root = _expect_root(text, "InitiateMultipartUploadResult")
    upload_id = find_text(root, "UploadId")
    if not upload_id:
        raise ProtocolError(f"Unable to get UploadId from response: {text}")
    return upload_id


def build_complete_multipart_upload(etags: list[PartETag]) -> str:
    """Build the CompleteMultipartUpload request body, in the given order."""
    root = ET.Element("CompleteMultipartUpload", xmlns=S3_NAMESPACE)
    for part in etags:
        part_element = ET.SubElement(root, "Part")
        ET.SubElement(part_element, "PartNumber").text = str(part.part)
        ET.SubElement(part_element, "ETag").text = part.etag
    return ET.tostring(root, encoding="unicode")


def parse_complete_multipart_upload(
    status_code: int,
    text: str,
    bucket_name: Optional[str] = None,
    object_name: Optional[str] = None,
) -> str:
    """Extract the final ETag from a CompleteMultipartUploadResult.

    S3 may answer 200 OK and still report a failure in an ``<Error>`` body,
    so that case raises a ServerError.

    Raises:
        ServerError: If the body is an S3 error document.
        ProtocolError: If the root element or ETag is missing.
    """
    root = parse_xml(text)
    if local_name(root.tag) == "Error":
        raise parse_server_error(status_code, text, bucket_name, object_name)
    if local_name(root.tag) != "CompleteMultipartUploadResult":
        raise ProtocolError(f"Unexpected response: {text}")
    etag = find_text(root, "ETag")
    if not etag:
        raise ProtocolError(f"Unable to get ETag from response: {text}")
    return sanitize_etag(etag)


def parse_copy_object(text: str) -> tuple[str, Optional[datetime]]:
    """Extract (etag, last_modified) from a CopyObjectResult."""
    root = parse_xml(text)
    if local_name(root.tag) == "Error":
        raise parse_server_error(200, text)
    if local_name(root.tag) != "CopyObjectResult":
        raise ProtocolError(f"Unexpected response: {text}")
    etag = find_text(root, "ETag")
    if not etag:
        raise ProtocolError(f"Unable to get ETag from response: {text}")
    return sanitize_etag(etag), parse_datetime(find_text(root, "LastModified"))


class ListObjectsPage:
    """One page of a ListObjectsV2 response."""

    def __init__(
        self,
        objects: list[ObjectInfo],
        prefixes: list[CommonPrefix],
        is_truncated: bool,
        next_continuation_token: Optional[str],
    ):
        self.objects = objects
        self.prefixes = prefixes
        self.is_truncated = is_truncated
        self.next_continuation_token = next_continuation_token


def parse_list_objects(text: str) -> ListObjectsPage:
    """Parse a ListBucketResult (ListObjectsV2)."""
    root = _expect_root(text, "ListBucketResult")

    objects = []
    for contents in find_children(root, "Contents"):
        objects.append(
            ObjectInfo(
                key=find_text(contents, "Key") or "",
                size=int(find_text(contents, "Size") or 0),
                etag=sanitize_etag(find_text(contents, "ETag")),
                last_modified=parse_datetime(find_text(contents, "LastModified")),
            )
        )

    prefixes = [
        CommonPrefix(prefix=find_text(element, "Prefix") or "")
        for element in find_children(root, "CommonPrefixes")
    ]

    is_truncated = (find_text(root, "IsTruncated") or "").lower() == "true"
    next_token = find_text(root, "NextContinuationToken") or None
    if is_truncated and next_token is None:
        raise ProtocolError("Truncated listing has no NextContinuationToken")

    return ListObjectsPage(objects, prefixes, is_truncated, next_token)
