"""Phone number OTP authentication service"""
