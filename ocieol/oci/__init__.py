"""OCI registry support

This module provides the subset of the OCI registry API needed to discover
and attach lifecycle annotations.
"""
from ocieol.oci.client import AuthenticationError, Client
from ocieol.oci.descriptor import Descriptor, EmptyDescriptor
from ocieol.oci.manifest import Manifest, ReferrersIndex
from ocieol.oci.annotation import (
    EOL_DATE_ANNOTATION,
    LIFECYCLE_ARTIFACT_TYPE,
    AnnotationError,
    Annotator,
    DigestReference,
    RegistryAnnotator,
)
