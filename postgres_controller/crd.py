"""ManagedDatabase CustomResourceDefinition"""

from typing import Any, Dict

import yaml

from .models import GROUP, KIND, PLURAL, SINGULAR, VERSION

CONDITION_SCHEMA = {
    "type": "object",
    "required": ["type", "status"],
    "properties": {
        "type": {"type": "string"},
        "status": {"type": "string", "enum": ["True", "False", "Unknown"]},
        "reason": {"type": "string"},
        "message": {"type": "string"},
        "lastTransitionTime": {"type": "string", "format": "date-time"},
    },
}

SPEC_SCHEMA = {
    "type": "object",
    "properties": {
        "databaseName": {"type": "string", "maxLength": 63},
        "owner": {"type": "string", "maxLength": 63},
        "privileges": {
            "type": "object",
            "properties": {
                "canLogin": {"type": "boolean", "default": True},
                "createDb": {"type": "boolean", "default": False},
                "createRole": {"type": "boolean", "default": False},
                "bypassRls": {"type": "boolean", "default": False},
                "superuser": {"type": "boolean", "default": False},
            },
        },
        "password": {
            "type": "object",
            "description": "Use this password instead of a generated one",
            "properties": {
                "value": {"type": "string", "minLength": 1},
                "fromSecret": {
                    "type": "object",
                    "description": "Key of a Secret in the resource's namespace",
                    "required": ["name", "key"],
                    "properties": {
                        "name": {"type": "string", "minLength": 1},
                        "key": {"type": "string", "minLength": 1},
                    },
                },
            },
            "oneOf": [{"required": ["value"]}, {"required": ["fromSecret"]}],
        },
        "retainOnDelete": {"type": "boolean", "default": False},
        "secret": {
            "type": "object",
            "properties": {
                "name": {"type": "string"},
                "namespaces": {"type": "array", "items": {"type": "string"}},
            },
        },
    },
}

STATUS_SCHEMA = {
    "type": "object",
    "properties": {
        "phase": {"type": "string"},
        "conditions": {"type": "array", "items": CONDITION_SCHEMA},
        "observedGeneration": {"type": "integer", "nullable": True},
        "secretRef": {
            "type": "object",
            "nullable": True,
            "properties": {
                "name": {"type": "string"},
                "namespace": {"type": "string"},
            },
        },
        "lastReconcileTime": {"type": "string", "nullable": True},
        "lastError": {
            "type": "object",
            "nullable": True,
            "additionalProperties": {"type": "string"},
        },
        "roleName": {"type": "string", "nullable": True},
        "databaseName": {"type": "string", "nullable": True},
        "failedGeneration": {"type": "integer", "nullable": True},
    },
}


def manifest() -> Dict[str, Any]:
    """The CRD as applied to the API server"""
    return {
        "apiVersion": "apiextensions.k8s.io/v1",
        "kind": "CustomResourceDefinition",
        "metadata": {"name": f"{PLURAL}.{GROUP}"},
        "spec": {
            "group": GROUP,
            "scope": "Namespaced",
            "names": {
                "plural": PLURAL,
                "singular": SINGULAR,
                "kind": KIND,
                "shortNames": ["mdb"],
            },
            "versions": [
                {
                    "name": VERSION,
                    "served": True,
                    "storage": True,
                    "subresources": {"status": {}},
                    "schema": {
                        "openAPIV3Schema": {
                            "type": "object",
                            "properties": {"spec": SPEC_SCHEMA, "status": STATUS_SCHEMA},
                        }
                    },
                    "additionalPrinterColumns": [
                        {"name": "Phase", "type": "string", "jsonPath": ".status.phase"},
                        {"name": "Role", "type": "string", "jsonPath": ".status.roleName"},
                        {"name": "Database", "type": "string", "jsonPath": ".status.databaseName"},
                        {"name": "Age", "type": "date", "jsonPath": ".metadata.creationTimestamp"},
                    ],
                }
            ],
        },
    }


def to_yaml() -> str:
    return yaml.safe_dump(manifest(), sort_keys=False)
