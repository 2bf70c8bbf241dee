"""HTTP routers exposing the session store"""
