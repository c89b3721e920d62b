"""
AgentOS API Routes
"""
