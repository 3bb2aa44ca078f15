"""Azure Resource Manager access — clients, deployments, VM power, cleanup."""
