"""Network resources — NSG, virtual network, public IP, NIC."""

from __future__ import annotations

from typing import Any

from .expressions import param, prop, reference, resource_id, var

NETWORK_API = "2023-09-01"

NSG_ID = resource_id("Microsoft.Network/networkSecurityGroups", var("nsgName"))
VNET_ID = resource_id("Microsoft.Network/virtualNetworks", var("vnetName"))
SUBNET_ID = resource_id("Microsoft.Network/virtualNetworks/subnets", var("vnetName"), var("subnetName"))
PUBLIC_IP_ID = resource_id("Microsoft.Network/publicIPAddresses", var("publicIpName"))
NIC_ID = resource_id("Microsoft.Network/networkInterfaces", var("nicName"))


def network_variables() -> dict[str, str]:
    return {
        "nsgName": "[format('{0}-nsg', parameters('prefix'))]",
        "vnetName": "[format('{0}-vnet', parameters('prefix'))]",
        "subnetName": "lab-subnet",
        "publicIpName": "[format('{0}-pip', parameters('prefix'))]",
        "nicName": "[format('{0}-nic', parameters('prefix'))]",
    }


def nsg(management_port: int) -> dict[str, Any]:
    """NSG with a single inbound allow rule for the management port."""
    return {
        "type": "Microsoft.Network/networkSecurityGroups",
        "apiVersion": NETWORK_API,
        "name": var("nsgName"),
        "location": param("location"),
        "properties": {
            "securityRules": [
                {
                    "name": "allow-management-inbound",
                    "properties": {
                        "priority": 1000,
                        "direction": "Inbound",
                        "access": "Allow",
                        "protocol": "Tcp",
                        "sourceAddressPrefix": param("allowedSourceAddress"),
                        "sourcePortRange": "*",
                        "destinationAddressPrefix": "*",
                        "destinationPortRange": str(management_port),
                    },
                },
            ],
        },
    }


def virtual_network() -> dict[str, Any]:
    return {
        "type": "Microsoft.Network/virtualNetworks",
        "apiVersion": NETWORK_API,
        "name": var("vnetName"),
        "location": param("location"),
        "dependsOn": [NSG_ID],
        "properties": {
            "addressSpace": {"addressPrefixes": [param("vnetAddressPrefix")]},
            "subnets": [
                {
                    "name": var("subnetName"),
                    "properties": {
                        "addressPrefix": param("subnetAddressPrefix"),
                        "networkSecurityGroup": {"id": NSG_ID},
                    },
                },
            ],
        },
    }


def public_ip() -> dict[str, Any]:
    return {
        "type": "Microsoft.Network/publicIPAddresses",
        "apiVersion": NETWORK_API,
        "name": var("publicIpName"),
        "location": param("location"),
        "sku": {"name": "Standard", "tier": "Regional"},
        "properties": {
            "publicIPAllocationMethod": "Static",
            "publicIPAddressVersion": "IPv4",
        },
    }


def network_interface() -> dict[str, Any]:
    return {
        "type": "Microsoft.Network/networkInterfaces",
        "apiVersion": NETWORK_API,
        "name": var("nicName"),
        "location": param("location"),
        "dependsOn": [VNET_ID, PUBLIC_IP_ID],
        "properties": {
            "ipConfigurations": [
                {
                    "name": "ipconfig1",
                    "properties": {
                        "privateIPAllocationMethod": "Dynamic",
                        "subnet": {"id": SUBNET_ID},
                        "publicIPAddress": {"id": PUBLIC_IP_ID},
                    },
                },
            ],
        },
    }


def network_resources(management_port: int) -> list[dict[str, Any]]:
    return [nsg(management_port), virtual_network(), public_ip(), network_interface()]


def public_ip_output() -> dict[str, str]:
    return {
        "type": "string",
        "value": prop(reference(PUBLIC_IP_ID, NETWORK_API), "ipAddress"),
    }
